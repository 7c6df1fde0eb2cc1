from datetime import date, datetime, timedelta, timezone

from keymeter.models import PlatformAccount, TimeWindow, UsageRecord, UsageReport


class TestTimeWindow:
    def test_boundaries_are_utc(self) -> "None":
        # 01:30 on the 1st in UTC+2 is still the previous month in UTC
        local = datetime(2024, 7, 1, 1, 30, tzinfo=timezone(timedelta(hours=2)))
        window = TimeWindow.now_utc(local)

        assert window.now == datetime(2024, 6, 30, 23, 30, tzinfo=timezone.utc)
        assert window.period_start == date(2024, 6, 1)
        assert window.today_start == datetime(2024, 6, 30, tzinfo=timezone.utc)

    def test_naive_input_is_treated_as_utc(self) -> "None":
        window = TimeWindow.now_utc(datetime(2024, 6, 15, 12, 0))
        assert window.month_start_ts == int(
            datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp()
        )

    def test_is_today(self, window: "TimeWindow") -> "None":
        assert window.is_today(window.today_start_ts) is True
        assert window.is_today(window.today_start_ts - 1) is False
        assert window.is_today(window.today_end) is False
        assert window.is_today(window.now) is True


class TestUsageRecord:
    def test_row_omits_unset_columns(self) -> "None":
        record = UsageRecord(
            api_key_id="k1",
            period_start=date(2024, 6, 1),
            synced_at="2024-06-15T12:00:00+00:00",
            monthly_usage=0.0,
        )

        row = record.to_row()

        assert row == {
            "api_key_id": "k1",
            "period_start": "2024-06-01",
            "synced_at": "2024-06-15T12:00:00+00:00",
            "monthly_usage": 0.0,
            "sync_status": "success",
        }
        assert "api_key_id" not in record.update_fields()


class TestUsageReport:
    def test_totals_across_identifiers(self) -> "None":
        report = UsageReport()
        report.usage_for("a").add(10, is_today=True)
        report.usage_for("a").add(5, is_today=False)
        report.usage_for("b").add(1, is_today=False)

        assert report.items["a"].month_amount == 15
        assert report.today_amount == 10
        assert report.month_amount == 16


def test_account_from_row_reads_encrypted_key() -> "None":
    account = PlatformAccount.from_row(
        {"id": 7, "platform": "openai", "admin_api_key_encrypted": "sk-admin"}
    )
    assert account.id == "7"
    assert account.admin_key_encrypted == "sk-admin"
    assert account.status == "active"
