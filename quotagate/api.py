"""HTTP routes for authentication, quota metering and administration."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import DuplicateEmailError, UserNotFoundError
from .ledger import QuotaLedger
from .models import SystemSettings, TokenClaims, User
from .security import AdminSecretAuth, BearerAuth, CredentialManager

logger = logging.getLogger("quotagate.api")

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6
SUMMARY_CALL_TYPE = "summary"


def _validate_email(value: str) -> str:
    stripped = value.strip()
    if not _EMAIL_PATTERN.match(stripped):
        raise ValueError("Email address is not valid")
    return stripped


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=128)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = None


class AdminUserUpdateRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    name: Optional[str] = Field(default=None, max_length=100)
    password: Optional[str] = Field(default=None, max_length=128)
    message_quota: Optional[int] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return _validate_password(value)


class SettingsUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_quota: Optional[int] = Field(default=None, alias="defaultQuota", ge=0)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    avatar: Optional[str]
    message_quota: int
    created_at: datetime
    updated_at: datetime


class SettingsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_quota: int = Field(..., serialization_alias="defaultQuota")


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    user: UserResponse
    token: str


class UserEnvelope(BaseModel):
    success: bool = True
    message: Optional[str] = None
    user: UserResponse


class UserListResponse(BaseModel):
    success: bool = True
    users: List[UserResponse]
    total: int


class QuotaResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    quota: int
    skipped: Optional[bool] = None


class SettingsResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    settings: SettingsPayload


class MessageResponse(BaseModel):
    success: bool = True
    message: str


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        avatar=user.avatar,
        message_quota=user.message_quota,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _settings_to_payload(settings: SystemSettings) -> SettingsPayload:
    return SettingsPayload(default_quota=settings.default_quota)


def _user_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


def _quota_exhausted() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"success": False, "message": "Message quota exhausted", "quota": 0},
    )


def register_auth_routes(
    app: FastAPI,
    ledger: QuotaLedger,
    credentials: CredentialManager,
) -> None:
    """Expose registration, login, profile and quota endpoints under ``/api/auth``."""

    router = APIRouter(prefix="/api/auth", tags=["auth"])
    current_claims = BearerAuth(credentials)

    @router.post("/register", status_code=status.HTTP_201_CREATED, response_model=AuthResponse)
    async def register(request: RegisterRequest) -> AuthResponse:
        if ledger.find_user_by_email(request.email) is not None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email is already registered")

        password_hash = await credentials.hash_password_async(request.password)
        try:
            user = await ledger.create_user(
                email=request.email,
                password_hash=password_hash,
                name=request.name,
            )
        except DuplicateEmailError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email is already registered") from exc

        token = credentials.issue_token(user.id, user.email)
        return AuthResponse(message="Registration successful", user=_user_to_response(user), token=token)

    @router.post("/login", response_model=AuthResponse)
    async def login(request: LoginRequest) -> AuthResponse:
        user = ledger.find_user_by_email(request.email)
        if user is None or not await credentials.verify_password_async(request.password, user.password_hash):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

        token = credentials.issue_token(user.id, user.email)
        logger.info("User %s logged in", user.id)
        return AuthResponse(message="Login successful", user=_user_to_response(user), token=token)

    @router.get("/me", response_model=UserEnvelope)
    async def read_profile(claims: TokenClaims = Depends(current_claims)) -> UserEnvelope:
        try:
            user = ledger.get_user(claims.user_id)
        except UserNotFoundError:
            raise _user_not_found()
        return UserEnvelope(user=_user_to_response(user))

    @router.put("/me", response_model=UserEnvelope)
    async def update_profile(
        request: ProfileUpdateRequest,
        claims: TokenClaims = Depends(current_claims),
    ) -> UserEnvelope:
        try:
            user = await ledger.update_profile(claims.user_id, name=request.name, avatar=request.avatar)
        except UserNotFoundError:
            raise _user_not_found()
        return UserEnvelope(message="Profile updated", user=_user_to_response(user))

    @router.get("/quota", response_model=QuotaResponse, response_model_exclude_none=True)
    async def read_quota(claims: TokenClaims = Depends(current_claims)) -> QuotaResponse:
        try:
            quota = await ledger.get_quota(claims.user_id)
        except UserNotFoundError:
            raise _user_not_found()
        return QuotaResponse(quota=quota)

    @router.post(
        "/consume",
        response_model=QuotaResponse,
        response_model_exclude_none=True,
        responses={403: {"description": "Message quota exhausted"}},
    )
    async def consume(claims: TokenClaims = Depends(current_claims)):
        try:
            result = await ledger.consume(claims.user_id)
        except UserNotFoundError:
            raise _user_not_found()
        if not result.charged:
            return _quota_exhausted()
        return QuotaResponse(message="Quota consumed", quota=result.remaining)

    @router.post(
        "/pre-consume",
        response_model=QuotaResponse,
        response_model_exclude_none=True,
        responses={403: {"description": "Message quota exhausted"}},
    )
    async def pre_consume(
        claims: TokenClaims = Depends(current_claims),
        x_call_type: Optional[str] = Header(default=None),
    ):
        try:
            if x_call_type == SUMMARY_CALL_TYPE:
                quota = await ledger.get_quota(claims.user_id)
                return QuotaResponse(message="Summary calls are not charged", quota=quota, skipped=True)
            result = await ledger.consume(claims.user_id)
        except UserNotFoundError:
            raise _user_not_found()
        if not result.charged:
            return _quota_exhausted()
        return QuotaResponse(message="Quota reserved", quota=result.remaining)

    @router.post("/refund-quota", response_model=QuotaResponse, response_model_exclude_none=True)
    async def refund_quota(claims: TokenClaims = Depends(current_claims)) -> QuotaResponse:
        try:
            result = await ledger.refund(claims.user_id)
        except UserNotFoundError:
            raise _user_not_found()
        return QuotaResponse(message="Quota refunded", quota=result.remaining)

    app.include_router(router)


def _guarded_route_class(guard: Callable[[Request], Awaitable[None]]) -> Type[APIRoute]:
    """Build an ``APIRoute`` subclass that runs ``guard`` before any body parsing."""

    class GuardedRoute(APIRoute):
        def get_route_handler(self) -> Callable[[Request], Awaitable[Response]]:
            handler = super().get_route_handler()

            async def guarded_handler(request: Request) -> Response:
                await guard(request)
                return await handler(request)

            return guarded_handler

    return GuardedRoute


def register_admin_routes(
    app: FastAPI,
    ledger: QuotaLedger,
    credentials: CredentialManager,
) -> None:
    """Expose administrator user and settings management under ``/api/admin``."""

    admin_auth = AdminSecretAuth(credentials)
    router = APIRouter(
        prefix="/api/admin",
        tags=["admin"],
        # The dependency declares the header in the OpenAPI schema; the route
        # class checks it before the request body is parsed.
        dependencies=[Depends(admin_auth)],
        route_class=_guarded_route_class(admin_auth),
    )

    @router.get("/users", response_model=UserListResponse)
    async def list_users() -> UserListResponse:
        users = [_user_to_response(user) for user in ledger.list_users()]
        return UserListResponse(users=users, total=len(users))

    @router.get("/users/{user_id}", response_model=UserEnvelope)
    async def get_user(user_id: str) -> UserEnvelope:
        try:
            user = ledger.get_user(user_id)
        except UserNotFoundError:
            raise _user_not_found()
        return UserEnvelope(user=_user_to_response(user))

    @router.put("/users/{user_id}", response_model=UserEnvelope)
    async def update_user(user_id: str, request: AdminUserUpdateRequest) -> UserEnvelope:
        try:
            ledger.get_user(user_id)
        except UserNotFoundError:
            raise _user_not_found()

        password_hash = None
        if request.password:
            password_hash = await credentials.hash_password_async(request.password)

        fields = {}
        if "name" in request.model_fields_set:
            fields["name"] = request.name

        try:
            user = await ledger.admin_update_user(
                user_id,
                email=request.email,
                password_hash=password_hash,
                message_quota=request.message_quota,
                **fields,
            )
        except UserNotFoundError:
            raise _user_not_found()
        except DuplicateEmailError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email is already used by another user",
            ) from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        logger.info("Administrator updated user %s (%s)", user_id, ", ".join(sorted(request.model_fields_set)))
        return UserEnvelope(message="User updated", user=_user_to_response(user))

    @router.delete("/users/{user_id}", response_model=MessageResponse)
    async def delete_user(user_id: str) -> MessageResponse:
        try:
            await ledger.delete_user(user_id)
        except UserNotFoundError:
            raise _user_not_found()
        return MessageResponse(message="User deleted")

    @router.get("/settings", response_model=SettingsResponse, response_model_by_alias=True)
    async def read_settings() -> SettingsResponse:
        return SettingsResponse(settings=_settings_to_payload(ledger.get_settings()))

    @router.put("/settings", response_model=SettingsResponse, response_model_by_alias=True)
    async def update_settings(request: SettingsUpdateRequest) -> SettingsResponse:
        settings = ledger.get_settings()
        if request.default_quota is not None:
            settings = await ledger.set_default_quota(request.default_quota)
        return SettingsResponse(message="Settings saved", settings=_settings_to_payload(settings))

    app.include_router(router)


def register_health_route(app: FastAPI) -> None:
    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


__all__ = [
    "register_admin_routes",
    "register_auth_routes",
    "register_health_route",
]
