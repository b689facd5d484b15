"""Regression tests for importing the storage layer without the web stack."""

from __future__ import annotations

import importlib
import sys
import types
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class CLIImportTests(unittest.TestCase):
    def setUp(self) -> None:
        self._saved = {
            name: module
            for name, module in sys.modules.items()
            if name == "quotagate" or name.startswith("quotagate.")
        }

    def tearDown(self) -> None:
        self._clear_package_modules()
        sys.modules.update(self._saved)

    @staticmethod
    def _clear_package_modules() -> None:
        for name in [m for m in list(sys.modules.keys()) if m == "quotagate" or m.startswith("quotagate.")]:
            sys.modules.pop(name, None)

    def test_import_ledger_without_fastapi(self) -> None:
        """Maintenance commands only need the store and ledger, never FastAPI."""

        self._clear_package_modules()

        fastapi_module: types.ModuleType | None = sys.modules.pop("fastapi", None)
        sys.modules["fastapi"] = None
        try:
            ledger_module = importlib.import_module("quotagate.ledger")
            self.assertTrue(hasattr(ledger_module, "QuotaLedger"))

            package = sys.modules.get("quotagate")
            self.assertIsNotNone(package)
            self.assertTrue(hasattr(package, "JsonFileStore"))
        finally:
            sys.modules.pop("fastapi", None)
            if fastapi_module is not None:
                sys.modules["fastapi"] = fastapi_module


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
