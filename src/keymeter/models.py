from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any


class Platform(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"
    VOLCENGINE = "volcengine"


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """
    TimeWindow pins "today" and "this month" to UTC day and month
    boundaries of a single instant, taken once per sync call.
    """

    now: "datetime"

    @classmethod
    def now_utc(cls, now: "datetime | None" = None) -> "TimeWindow":
        current = now or datetime.now(timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return cls(now=current.astimezone(timezone.utc))

    @property
    def today_start(self) -> "datetime":
        return self.now.replace(hour=0, minute=0, second=0, microsecond=0)

    @property
    def today_end(self) -> "datetime":
        return self.today_start + timedelta(days=1)

    @property
    def month_start(self) -> "datetime":
        return self.today_start.replace(day=1)

    @property
    def period_start(self) -> "date":
        # the billing period a usage row belongs to
        return self.month_start.date()

    @property
    def now_ts(self) -> "int":
        return int(self.now.timestamp())

    @property
    def today_start_ts(self) -> "int":
        return int(self.today_start.timestamp())

    @property
    def month_start_ts(self) -> "int":
        return int(self.month_start.timestamp())

    def is_today(self, moment: "datetime | int | float") -> "bool":
        """
        checks if a bucket start (unix seconds or aware datetime) falls
        inside today's UTC day.
        """
        if not isinstance(moment, datetime):
            moment = datetime.fromtimestamp(moment, tz=timezone.utc)
        return self.today_start <= moment < self.today_end


@dataclass(frozen=True, slots=True)
class PlatformAccount:
    """
    PlatformAccount is one vendor admin credential and its sync status.
    """

    id: "str"
    platform: "str"
    admin_key_encrypted: "str | None"
    status: "str" = "active"
    name: "str | None" = None
    tenant_id: "str | None" = None
    last_verified_at: "str | None" = None
    error_message: "str | None" = None
    # OpenAI accounts pin a default project for key creation
    project_id: "str | None" = None
    organization_id: "str | None" = None

    @classmethod
    def from_row(cls, row: "dict[str, Any]") -> "PlatformAccount":
        return cls(
            id=str(row["id"]),
            platform=row.get("platform", ""),
            admin_key_encrypted=row.get("admin_api_key_encrypted"),
            status=row.get("status", "active"),
            name=row.get("name"),
            tenant_id=row.get("tenant_id"),
            last_verified_at=row.get("last_verified_at"),
            error_message=row.get("error_message"),
            project_id=row.get("project_id"),
            organization_id=row.get("organization_id"),
        )


@dataclass(frozen=True, slots=True)
class ApiKeyRecord:
    """
    ApiKeyRecord is a locally tracked vendor API key row.
    """

    id: "str"
    name: "str"
    platform: "str"
    platform_key_id: "str | None" = None
    project_id: "str | None" = None
    workspace_id: "str | None" = None
    status: "str" = "active"
    tenant_id: "str | None" = None
    platform_account_id: "str | None" = None
    created_by: "str | None" = None

    @classmethod
    def from_row(cls, row: "dict[str, Any]") -> "ApiKeyRecord":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            platform=row.get("platform", ""),
            platform_key_id=row.get("platform_key_id"),
            project_id=row.get("project_id"),
            workspace_id=row.get("workspace_id"),
            status=row.get("status", "active"),
            tenant_id=row.get("tenant_id"),
            platform_account_id=row.get("platform_account_id"),
            created_by=row.get("created_by"),
        )


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord is one usage snapshot for one key and one billing
    period. Columns left as None were not produced by the vendor and
    are not written.
    """

    api_key_id: "str"
    period_start: "date"
    synced_at: "str"
    total_usage: "float | None" = None
    monthly_usage: "float | None" = None
    daily_usage: "float | None" = None
    token_usage_total: "int | None" = None
    token_usage_monthly: "int | None" = None
    token_usage_daily: "int | None" = None
    prompt_tokens_total: "int | None" = None
    completion_tokens_total: "int | None" = None
    # only meaningful for credit based vendors
    balance: "float | None" = None
    credit_limit: "float | None" = None
    sync_status: "str" = "success"
    raw_response: "dict[str, Any] | None" = None

    def to_row(self) -> "dict[str, Any]":
        row = {k: v for k, v in asdict(self).items() if v is not None}
        row["period_start"] = self.period_start.isoformat()
        return row

    def update_fields(self) -> "dict[str, Any]":
        """
        the columns to apply to an existing row for the same key and period.
        """
        row = self.to_row()
        row.pop("api_key_id")
        row.pop("period_start")
        return row


@dataclass(slots=True)
class NormalizedUsage:
    """
    NormalizedUsage accumulates one vendor identifier's usage or cost
    (a key id, project id, workspace id or key hash) for the current
    month, with today's share tracked separately.
    """

    identifier: "str"
    today_amount: "float" = 0
    month_amount: "float" = 0
    total_amount: "float" = 0
    # extra per-identifier breakdown, e.g. input/output tokens or line items
    details: "dict[str, float]" = field(default_factory=dict)

    def add(self, amount: "float", is_today: "bool") -> "None":
        self.month_amount += amount
        self.total_amount += amount
        if is_today:
            self.today_amount += amount

    def add_detail(self, name: "str", amount: "float") -> "None":
        self.details[name] = self.details.get(name, 0) + amount

    def clamped(self) -> "NormalizedUsage":
        """
        returns a copy where 0 <= today <= month <= total. Credits and
        refunds can push a bucket negative, and a refund booked earlier in
        the month can leave the month below today.
        """
        today = max(self.today_amount, 0)
        month = max(self.month_amount, today)
        return NormalizedUsage(
            identifier=self.identifier,
            today_amount=today,
            month_amount=month,
            total_amount=max(self.total_amount, month),
            details=dict(self.details),
        )


@dataclass(slots=True)
class UsageReport:
    """
    UsageReport is what an adapter returns from a usage or cost fetch.
    """

    items: "dict[str, NormalizedUsage]" = field(default_factory=dict)
    total_buckets: "int" = 0
    pages_fetched: "int" = 0
    # True when a page after the first failed and the rest was dropped
    truncated: "bool" = False

    def usage_for(self, identifier: "str") -> "NormalizedUsage":
        if identifier not in self.items:
            self.items[identifier] = NormalizedUsage(identifier=identifier)
        return self.items[identifier]

    @property
    def today_amount(self) -> "float":
        return sum(u.today_amount for u in self.items.values())

    @property
    def month_amount(self) -> "float":
        return sum(u.month_amount for u in self.items.values())

    @property
    def total_amount(self) -> "float":
        return sum(u.total_amount for u in self.items.values())


@dataclass(frozen=True, slots=True)
class VendorKey:
    """
    VendorKey is a key as listed by the vendor's admin API.
    """

    id: "str"
    name: "str"
    project_id: "str | None" = None
    project_name: "str | None" = None
    workspace_id: "str | None" = None
    status: "str | None" = None
    # OpenRouter reports usage per key directly
    usage: "float | None" = None
    usage_daily: "float | None" = None
    usage_monthly: "float | None" = None
    limit: "float | None" = None
    raw: "dict[str, Any]" = field(default_factory=dict)
