import importlib.util
from pathlib import Path

import pytest

from favilla_api.services.identity import IdentityResolver
from favilla_api.services.loyalty.ledger_service import LedgerService

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "tooling" / "scripts" / "import_legacy_balances.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("import_legacy_balances", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.asyncio
async def test_import_is_safe_to_rerun(session_factory, tmp_path) -> None:
    script = _load_script()
    export = tmp_path / "legacy_points.csv"
    export.write_text("legacy_user_id,points\n29,120\n0031,45\n33,0\n", encoding="utf-8")
    rows = script.read_rows(export)

    first = await script._run(rows, session_factory=session_factory)
    second = await script._run(rows, session_factory=session_factory)

    assert first == {"imported": 2, "replayed": 0, "skipped": 1}
    assert second == {"imported": 0, "replayed": 2, "skipped": 1}

    async with session_factory() as session:
        resolver = IdentityResolver(session)
        ledger = LedgerService(session)
        assert await ledger.get_balance(await resolver.lookup("legacy", "29")) == 120
        assert await ledger.get_balance(await resolver.lookup("legacy", "31")) == 45
        assert await resolver.lookup("legacy", "33") is None


def test_negative_and_malformed_rows_are_rejected(tmp_path) -> None:
    script = _load_script()
    negative = tmp_path / "negative.csv"
    negative.write_text("legacy_user_id,points\n29,120\n30,-15\n", encoding="utf-8")
    fractional = tmp_path / "fractional.csv"
    fractional.write_text("legacy_user_id,points\n29,12.5\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Line 3"):
        script.read_rows(negative)
    with pytest.raises(ValueError, match="whole number"):
        script.read_rows(fractional)
