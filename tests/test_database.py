import time
from dataclasses import replace

import pytest

from stable_channels.amounts import Bitcoin, USD
from stable_channels.database import Database
from stable_channels.stability import Action, StableChannel


@pytest.fixture
def database(tmp_path, plugin):
    db = Database(str(tmp_path / "state" / "stable_channels.db"), plugin)
    db.initialize()
    yield db
    db.close()


def _state(**overrides):
    state = StableChannel(
        channel_id="aa" * 32,
        is_stable_receiver=True,
        counterparty="02" + "ab" * 32,
        expected_usd=USD(100.0),
        stable_receiver_btc=Bitcoin.from_sats(190_000),
        stable_provider_btc=Bitcoin.from_sats(810_000),
        risk_level=50,
        last_action=Action.WAIT,
    )
    return replace(state, **overrides)


def test_save_and_load_stable_channel(database) -> None:
    database.save_stable_channel(_state())

    row = database.get_stable_channel("aa" * 32)
    assert row["risk_level"] == 50
    assert row["expected_usd"] == 100.0
    assert row["stable_receiver_sats"] == 190_000
    assert row["balances_known"] == 0
    assert row["last_action"] == "wait"
    assert row["active"] == 1


def test_save_replaces_existing_row(database) -> None:
    database.save_stable_channel(_state())
    database.save_stable_channel(_state(risk_level=0))

    rows = database.get_all_stable_channels()
    assert len(rows) == 1
    assert rows[0]["risk_level"] == 0


def test_deactivate_stable_channel(database) -> None:
    database.save_stable_channel(_state())
    database.deactivate_stable_channel("aa" * 32)
    assert database.get_stable_channel("aa" * 32)["active"] == 0


def test_missing_channel_is_none(database) -> None:
    assert database.get_stable_channel("nope") is None


def test_record_and_list_payments(database) -> None:
    database.record_payment("aa" * 32, "peer", 10_000_000, 5.0, "success", payment_id="ff" * 32)
    database.record_payment("aa" * 32, "peer", 2_000_000, 1.0, "failed", error_message="no route")
    database.record_payment("bb" * 32, "peer", 1_000, 0.01, "success")

    recent = database.get_recent_payments(limit=10, channel_id="aa" * 32)
    assert [p["status"] for p in recent] == ["failed", "success"]
    assert len(database.get_recent_payments(limit=10)) == 3
    assert database.get_total_paid_msat("aa" * 32) == 10_000_000


def test_cleanup_old_payments(database) -> None:
    old_id = database.record_payment("aa" * 32, "peer", 1_000, 0.01, "success")
    database.record_payment("aa" * 32, "peer", 2_000, 0.02, "success")
    database._get_connection().execute(
        "UPDATE stability_payments SET timestamp = ? WHERE id = ?",
        (int(time.time()) - 100 * 86400, old_id)
    )

    database.cleanup_old_data(days_to_keep=90)
    remaining = database.get_recent_payments(limit=10)
    assert [p["amount_msat"] for p in remaining] == [2_000]
