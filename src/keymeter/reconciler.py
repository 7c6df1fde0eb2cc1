"""
Maps vendor reported usage onto locally stored key rows.

Vendors identify usage by api_key_id, project_id, workspace_id or key
hash, none of which line up with local row ids. Each reconcile_*
function below encodes one vendor's matching policy and returns the
usage records to persist together with what could not be matched.

When a vendor only reports cost for a group of keys (an OpenAI project,
an Anthropic workspace) the cost is split evenly across the group's
keys: today, month and total are each divided by N independently and
rounded to 4 decimals. It is an approximation, usage weighted splitting
would need per key cost the vendors do not expose.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from keymeter.models import (
    ApiKeyRecord,
    NormalizedUsage,
    Platform,
    TimeWindow,
    UsageRecord,
    UsageReport,
    VendorKey,
)
from keymeter.provider.volcengine import COMPLETION_TOKENS, IMAGE_COUNT, PROMPT_TOKENS

logger = structlog.get_logger()

NO_WORKSPACE = "no_workspace"


def split_evenly(amount: "float", count: "int") -> "float":
    return round(amount / count, 4)


def _fmt(amount: "float") -> "str":
    return f"{amount:.4f}"


@dataclass(slots=True)
class UnmatchedUsage:
    """
    UnmatchedUsage is the aggregate of vendor usage that had no local
    row to land on. It is returned to the caller and never persisted.
    """

    items: "list[dict[str, Any]]" = field(default_factory=list)
    today_amount: "float" = 0.0
    month_amount: "float" = 0.0

    def add(
        self,
        identifier: "str",
        today: "float",
        month: "float",
        reason: "str",
        **extra: "Any",
    ) -> "None":
        self.today_amount += today
        self.month_amount += month
        self.items.append(
            {
                "identifier": identifier,
                "today_amount": today,
                "month_amount": month,
                "reason": reason,
                **extra,
            }
        )

    def to_dict(self) -> "dict[str, Any]":
        return {
            "count": len(self.items),
            "today_amount": round(self.today_amount, 4),
            "month_amount": round(self.month_amount, 4),
            "items": self.items,
        }


@dataclass(slots=True)
class Reconciliation:
    records: "list[UsageRecord]" = field(default_factory=list)
    matched_keys: "list[dict[str, Any]]" = field(default_factory=list)
    unmatched: "UnmatchedUsage" = field(default_factory=UnmatchedUsage)
    # vendor keys with no local row, to be created by the caller
    new_keys: "list[VendorKey]" = field(default_factory=list)


@dataclass(slots=True)
class _Share:
    today: "float" = 0.0
    month: "float" = 0.0
    total: "float" = 0.0
    details: "dict[str, Any]" = field(default_factory=dict)


def _for_platform(
    local_keys: "Iterable[ApiKeyRecord]",
    platform: "Platform",
) -> "list[ApiKeyRecord]":
    return [k for k in local_keys if k.platform == platform.value]


def reconcile_openai_usage(
    report: "UsageReport",
    vendor_keys: "Iterable[VendorKey]",
    local_keys: "Iterable[ApiKeyRecord]",
    window: "TimeWindow",
    synced_at: "str",
) -> "Reconciliation":
    """
    matches token usage by vendor key id -> vendor key name -> local row
    with the same name. Usage from several vendor keys that resolve to
    the same local row is summed.
    """
    result = Reconciliation()
    name_by_key_id = {k.id: k.name for k in vendor_keys}
    local_by_name = {k.name: k for k in _for_platform(local_keys, Platform.OPENAI)}

    tokens: "dict[str, NormalizedUsage]" = {}
    for api_key_id, usage in report.items.items():
        usage = usage.clamped()
        name = name_by_key_id.get(api_key_id)
        local = local_by_name.get(name) if name else None
        if local is None:
            result.unmatched.add(
                api_key_id,
                usage.today_amount,
                usage.month_amount,
                reason="unknown_vendor_key" if name is None else "no_local_key",
                name=name,
            )
            continue

        merged = tokens.setdefault(local.id, NormalizedUsage(identifier=local.id))
        merged.today_amount += usage.today_amount
        merged.month_amount += usage.month_amount
        merged.total_amount += usage.total_amount
        for detail, amount in usage.details.items():
            merged.add_detail(detail, amount)

        result.matched_keys.append(
            {
                "openai_key_id": api_key_id,
                "name": name,
                "db_id": local.id,
                "month_tokens": int(usage.month_amount),
                "today_tokens": int(usage.today_amount),
            }
        )

    for local_id, usage in tokens.items():
        result.records.append(
            UsageRecord(
                api_key_id=local_id,
                period_start=window.period_start,
                synced_at=synced_at,
                token_usage_total=int(usage.month_amount),
                token_usage_monthly=int(usage.month_amount),
                token_usage_daily=int(usage.today_amount),
                prompt_tokens_total=int(usage.details.get("input_tokens", 0)),
                completion_tokens_total=int(usage.details.get("output_tokens", 0)),
            )
        )
    return result


def reconcile_openai_costs(
    report: "UsageReport",
    vendor_keys: "Iterable[VendorKey]",
    local_keys: "Iterable[ApiKeyRecord]",
    window: "TimeWindow",
    synced_at: "str",
) -> "Reconciliation":
    """
    splits each project's cost evenly across the project's vendor keys,
    then matches every key by name. A share whose key has no local row
    is reported as unmatched.
    """
    result = Reconciliation()
    keys_by_project: "dict[str, list[VendorKey]]" = {}
    for key in vendor_keys:
        keys_by_project.setdefault(key.project_id or "unknown", []).append(key)
    local_by_name = {k.name: k for k in _for_platform(local_keys, Platform.OPENAI)}

    shares: "dict[str, _Share]" = {}
    for project_id, cost in report.items.items():
        cost = cost.clamped()
        project_keys = keys_by_project.get(project_id, [])
        if not project_keys:
            result.unmatched.add(
                project_id,
                cost.today_amount,
                cost.month_amount,
                reason="no_project_keys",
            )
            continue

        count = len(project_keys)
        today = split_evenly(cost.today_amount, count)
        month = split_evenly(cost.month_amount, count)
        total = split_evenly(cost.total_amount, count)

        for key in project_keys:
            local = local_by_name.get(key.name)
            if local is None:
                result.unmatched.add(
                    key.id,
                    today,
                    month,
                    reason="no_local_key",
                    name=key.name,
                    project_id=project_id,
                )
                continue

            share = shares.setdefault(local.id, _Share())
            share.today += today
            share.month += month
            share.total += total
            share.details[project_id] = dict(cost.details)

            result.matched_keys.append(
                {
                    "project_id": project_id,
                    "project_name": key.project_name,
                    "name": key.name,
                    "db_id": local.id,
                    "month_cost": _fmt(month),
                    "today_cost": _fmt(today),
                    "keys_in_project": count,
                }
            )

    for local_id, share in shares.items():
        result.records.append(
            UsageRecord(
                api_key_id=local_id,
                period_start=window.period_start,
                synced_at=synced_at,
                total_usage=round(share.total, 4),
                monthly_usage=round(share.month, 4),
                daily_usage=round(share.today, 4),
                raw_response={"costs_details": share.details},
            )
        )
    return result


def _zero_record(
    key: "ApiKeyRecord",
    window: "TimeWindow",
    synced_at: "str",
    note: "str",
) -> "UsageRecord":
    return UsageRecord(
        api_key_id=key.id,
        period_start=window.period_start,
        synced_at=synced_at,
        total_usage=0.0,
        monthly_usage=0.0,
        daily_usage=0.0,
        raw_response={"note": note},
    )


def reconcile_anthropic_costs(
    report: "UsageReport",
    local_keys: "Iterable[ApiKeyRecord]",
    window: "TimeWindow",
    synced_at: "str",
) -> "Reconciliation":
    """
    matches workspace cost directly against the local rows' workspace_id.
    Local rows in a workspace without cost this month, and rows without
    any workspace, get explicit zero records so stale values do not
    linger from an earlier sync.
    """
    result = Reconciliation()
    keys_by_workspace: "dict[str, list[ApiKeyRecord]]" = {}
    without_workspace: "list[ApiKeyRecord]" = []
    for key in _for_platform(local_keys, Platform.ANTHROPIC):
        if key.workspace_id:
            keys_by_workspace.setdefault(key.workspace_id, []).append(key)
        else:
            without_workspace.append(key)

    processed: "set[str]" = set()
    for workspace_id, cost in report.items.items():
        cost = cost.clamped()
        workspace_keys = keys_by_workspace.get(workspace_id, [])
        if not workspace_keys:
            result.unmatched.add(
                workspace_id,
                cost.today_amount,
                cost.month_amount,
                reason="no_local_keys",
            )
            continue

        count = len(workspace_keys)
        today = split_evenly(cost.today_amount, count)
        month = split_evenly(cost.month_amount, count)
        total = split_evenly(cost.total_amount, count)

        for key in workspace_keys:
            processed.add(key.id)
            result.matched_keys.append(
                {
                    "workspace_id": workspace_id,
                    "name": key.name,
                    "db_id": key.id,
                    "month_cost": _fmt(month),
                    "today_cost": _fmt(today),
                    "keys_in_workspace": count,
                }
            )
            result.records.append(
                UsageRecord(
                    api_key_id=key.id,
                    period_start=window.period_start,
                    synced_at=synced_at,
                    total_usage=total,
                    monthly_usage=month,
                    daily_usage=today,
                    raw_response={"workspace_id": workspace_id},
                )
            )

    zero_keys = [
        (workspace_id, key)
        for workspace_id, keys in keys_by_workspace.items()
        for key in keys
        if key.id not in processed
    ]
    zero_keys += [(NO_WORKSPACE, key) for key in without_workspace]

    for workspace_id, key in zero_keys:
        if key.id in processed:
            continue
        processed.add(key.id)
        result.matched_keys.append(
            {
                "workspace_id": workspace_id,
                "name": key.name,
                "db_id": key.id,
                "month_cost": _fmt(0),
                "today_cost": _fmt(0),
                "keys_in_workspace": 1,
            }
        )
        note = "key has no workspace_id" if workspace_id == NO_WORKSPACE else "no workspace cost this month"
        result.records.append(_zero_record(key, window, synced_at, note))

    return result


def reconcile_openrouter(
    report: "UsageReport",
    vendor_keys: "Iterable[VendorKey]",
    local_keys: "Iterable[ApiKeyRecord]",
    window: "TimeWindow",
    synced_at: "str",
) -> "Reconciliation":
    """
    matches each vendor key hash against the local platform_key_id.
    Vendor keys with no local row are returned as new_keys for the
    caller to create; their usage is held as unmatched until then.
    """
    result = Reconciliation()
    local_by_hash = {
        k.platform_key_id: k
        for k in _for_platform(local_keys, Platform.OPENROUTER)
        if k.platform_key_id
    }

    for key in vendor_keys:
        usage = (report.items.get(key.id) or NormalizedUsage(identifier=key.id)).clamped()
        local = local_by_hash.get(key.id)
        if local is None:
            result.new_keys.append(key)
            result.unmatched.add(
                key.id,
                usage.today_amount,
                usage.month_amount,
                reason="no_local_key",
                name=key.name,
            )
            continue

        result.matched_keys.append(
            {
                "key_hash": key.id,
                "name": key.name,
                "db_id": local.id,
                "month_usage": _fmt(usage.month_amount),
                "today_usage": _fmt(usage.today_amount),
            }
        )
        result.records.append(
            UsageRecord(
                api_key_id=local.id,
                period_start=window.period_start,
                synced_at=synced_at,
                total_usage=round(usage.total_amount, 4),
                monthly_usage=round(usage.month_amount, 4),
                daily_usage=round(usage.today_amount, 4),
                # OpenRouter has no per key balance
                balance=None,
                credit_limit=key.limit,
                raw_response=key.raw,
            )
        )
    return result


def in_tenant_scope(key: "ApiKeyRecord", tenant_id: "str | None") -> "bool":
    # a caller without a tenant only sees rows without a tenant
    return key.tenant_id == tenant_id


def reconcile_volcengine(
    report: "UsageReport | None",
    balance: "dict[str, float] | None",
    vendor_keys: "Iterable[VendorKey]",
    local_keys: "Iterable[ApiKeyRecord]",
    tenant_id: "str | None",
    window: "TimeWindow",
    synced_at: "str",
) -> "Reconciliation":
    """
    writes the same organization wide usage and balance to every
    tracked key in the caller's tenant. Vendor access keys with no row
    in the tenant are returned as new_keys.
    """
    result = Reconciliation()
    scoped = [
        k
        for k in _for_platform(local_keys, Platform.VOLCENGINE)
        if in_tenant_scope(k, tenant_id)
    ]
    known = {k.platform_key_id for k in scoped if k.platform_key_id}
    result.new_keys = [k for k in vendor_keys if k.id not in known]

    usage_summary: "dict[str, float] | None" = None
    month_tokens = today_tokens = None
    prompt_tokens = completion_tokens = None
    if report is not None:
        prompt = (report.items.get(PROMPT_TOKENS) or NormalizedUsage(PROMPT_TOKENS)).clamped()
        completion = (
            report.items.get(COMPLETION_TOKENS) or NormalizedUsage(COMPLETION_TOKENS)
        ).clamped()
        images = (report.items.get(IMAGE_COUNT) or NormalizedUsage(IMAGE_COUNT)).clamped()
        prompt_tokens = int(prompt.month_amount)
        completion_tokens = int(completion.month_amount)
        month_tokens = prompt_tokens + completion_tokens
        today_tokens = int(prompt.today_amount + completion.today_amount)
        usage_summary = {
            "total_tokens": month_tokens,
            "today_tokens": today_tokens,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "image_count": int(images.month_amount),
        }

    for key in scoped:
        result.matched_keys.append(
            {
                "access_key_id": key.platform_key_id,
                "name": key.name,
                "db_id": key.id,
                "month_tokens": month_tokens,
                "today_tokens": today_tokens,
            }
        )
        result.records.append(
            UsageRecord(
                api_key_id=key.id,
                period_start=window.period_start,
                synced_at=synced_at,
                token_usage_total=month_tokens,
                token_usage_monthly=month_tokens,
                token_usage_daily=today_tokens,
                prompt_tokens_total=prompt_tokens,
                completion_tokens_total=completion_tokens,
                balance=balance["available_balance"] if balance else None,
                credit_limit=balance["credit_limit"] if balance else None,
                raw_response={"balance": balance, "usage": usage_summary},
            )
        )
    return result
