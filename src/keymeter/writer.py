from dataclasses import dataclass, field
from typing import Iterable

import structlog

from keymeter.errors import StoreConflictError
from keymeter.models import UsageRecord
from keymeter.store.base import USAGE_TABLE, Store

logger = structlog.get_logger()


@dataclass(slots=True)
class SaveSummary:
    saved_count: "int" = 0
    errors: "list[dict[str, str]]" = field(default_factory=list)


class UsageWriter:
    """
    UsageWriter persists at most one usage row per
    (api_key_id, period_start).

    Each record is looked up first and then updated or inserted. If the
    insert loses a race against a concurrent sync, the conflict is
    resolved by updating the row that won. A failing record is
    collected into the summary's errors and never stops the batch.
    """

    def __init__(self, store: "Store") -> "None":
        self._store = store

    async def save(self, records: "Iterable[UsageRecord]") -> "SaveSummary":
        summary = SaveSummary()
        for record in records:
            try:
                await self._save_one(record)
            except Exception as exc:
                logger.warning(
                    "usage_save_failed",
                    api_key_id=record.api_key_id,
                    period_start=record.period_start.isoformat(),
                    error=str(exc),
                )
                summary.errors.append(
                    {"api_key_id": record.api_key_id, "error": str(exc)}
                )
                continue
            summary.saved_count += 1

        logger.debug(
            "usage_save_done",
            saved_count=summary.saved_count,
            error_count=len(summary.errors),
        )
        return summary

    async def _save_one(self, record: "UsageRecord") -> "None":
        key = {
            "api_key_id": record.api_key_id,
            "period_start": record.period_start.isoformat(),
        }
        existing = await self._store.select(USAGE_TABLE, key)
        if existing:
            await self._store.update(
                USAGE_TABLE, record.update_fields(), {"id": existing[0]["id"]}
            )
            return

        try:
            await self._store.insert(USAGE_TABLE, record.to_row())
        except StoreConflictError:
            existing = await self._store.select(USAGE_TABLE, key)
            if not existing:
                raise
            await self._store.update(
                USAGE_TABLE, record.update_fields(), {"id": existing[0]["id"]}
            )
