import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from keymeter.errors import ConfigurationError, VendorAPIError
from keymeter.models import TimeWindow, UsageReport, VendorKey
from keymeter.provider.base import vendor_error
from keymeter.signer import sign_request

logger = structlog.get_logger()

IAM_HOST = "iam.volcengineapi.com"
BILLING_HOST = "billing.volcengineapi.com"
ARK_HOST = "open.volcengineapi.com"

# metric names summed out of GetUsage's MetricItems
PROMPT_TOKENS = "PromptTokens"
COMPLETION_TOKENS = "CompletionTokens"
IMAGE_COUNT = "ImageCount"
USAGE_METRICS = (PROMPT_TOKENS, COMPLETION_TOKENS, IMAGE_COUNT)

# codes that mean the request authenticated but was throttled
THROTTLE_CODES = frozenset({"RequestLimitExceeded", "Throttling", "FlowLimitExceeded"})

FRIENDLY_ERRORS = {
    "InvalidAccessKeyId": "AccessKeyId is invalid or does not exist",
    "SignatureDoesNotMatch": "signature mismatch, check the SecretAccessKey",
    "NoSuchEntity": "user or AccessKey does not exist",
    "LimitExceeded": "AccessKey quota reached",
    "AccessDenied": "admin key lacks the required permission",
}


@dataclass(frozen=True, slots=True)
class VolcengineCredential:
    access_key_id: "str"
    secret_access_key: "str"

    @classmethod
    def from_admin_key(cls, admin_key: "str") -> "VolcengineCredential":
        """
        parses the stored composite form `accessKeyId:base64(secretKey)`.
        """
        access_key_id, sep, encoded = (admin_key or "").partition(":")
        if not sep or not access_key_id or not encoded:
            raise ConfigurationError(
                'malformed Volcengine admin key, expected "AK:base64(SK)"'
            )
        try:
            secret = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError(
                "malformed Volcengine admin key, secret is not valid base64"
            ) from exc
        return cls(access_key_id=access_key_id, secret_access_key=secret)

    def to_admin_key(self) -> "str":
        encoded = base64.b64encode(self.secret_access_key.encode("utf-8")).decode("ascii")
        return f"{self.access_key_id}:{encoded}"


def _as_credential(credential: "VolcengineCredential | str") -> "VolcengineCredential":
    if isinstance(credential, VolcengineCredential):
        return credential
    return VolcengineCredential.from_admin_key(credential)


def _metadata_error(payload: "Any") -> "dict[str, Any] | None":
    if not isinstance(payload, dict):
        return None
    metadata = payload.get("ResponseMetadata") or {}
    return metadata.get("Error") or None


def _metric_name(item: "dict[str, Any]") -> "str":
    return item.get("MetricName") or item.get("Name") or ""


class VolcengineAdapter:
    """
    VolcengineAdapter implements the UsageAdapter protocol for
    Volcengine's signed OpenAPI. Usage and balance are organization
    wide: there is no per key breakdown.
    """

    def __init__(self, timeout: "float" = 10.0, region: "str" = "cn-beijing") -> "None":
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)
        self._ark_region = region

    @property
    def platform(self) -> "str":
        return "volcengine"

    async def close(self) -> "None":
        await self._client.aclose()

    async def _call(
        self,
        credential: "VolcengineCredential",
        service: "str",
        region: "str",
        host: "str",
        action: "str",
        version: "str",
        method: "str" = "GET",
        extra_query: "dict[str, str] | None" = None,
        body: "dict[str, Any] | None" = None,
        use_x_content_sha256: "bool" = False,
    ) -> "dict[str, Any]":
        query = {"Action": action, "Version": version, **(extra_query or {})}
        raw_body = json.dumps(body) if body is not None else ""
        signed = sign_request(
            access_key_id=credential.access_key_id,
            secret_access_key=credential.secret_access_key,
            service=service,
            region=region,
            host=host,
            method=method,
            path="/",
            query=query,
            body=raw_body,
            use_x_content_sha256=use_x_content_sha256,
        )

        logger.debug("volcengine_request", action=action, host=host)
        resp = await self._client.request(
            method,
            signed.url,
            headers=signed.headers(),
            content=raw_body or None,
        )

        try:
            payload = resp.json()
        except ValueError:
            raise vendor_error(resp, f"Volcengine {action} failed") from None

        error = _metadata_error(payload)
        if error:
            code = error.get("Code")
            message = FRIENDLY_ERRORS.get(code) or error.get("Message") or f"Volcengine {action} failed"
            raise VendorAPIError(
                message,
                status_code=resp.status_code if not resp.is_success else 400,
                code=code,
            )
        if not resp.is_success:
            raise vendor_error(resp, f"Volcengine {action} failed")
        return payload.get("Result") or {}

    async def fetch_keys(
        self,
        credential: "VolcengineCredential | str",
        user_name: "str | None" = None,
    ) -> "list[VendorKey]":
        """
        lists IAM access keys, optionally restricted to one IAM user.
        """
        extra = {"UserName": user_name} if user_name else None
        result = await self._call(
            _as_credential(credential),
            service="iam",
            region="cn-north-1",
            host=IAM_HOST,
            action="ListAccessKeys",
            version="2018-01-01",
            extra_query=extra,
        )
        return [
            VendorKey(
                id=key["AccessKeyId"],
                name=key.get("UserName") or "",
                status="active" if str(key.get("Status", "")).lower() == "active" else "inactive",
                raw=key,
            )
            for key in result.get("AccessKeyMetadata") or []
            if key.get("AccessKeyId")
        ]

    async def create_access_key(
        self,
        credential: "VolcengineCredential | str",
        user_name: "str",
    ) -> "dict[str, Any]":
        """
        creates an IAM access key for the given user. The secret is only
        returned by this call.
        """
        result = await self._call(
            _as_credential(credential),
            service="iam",
            region="cn-north-1",
            host=IAM_HOST,
            action="CreateAccessKey",
            version="2018-01-01",
            extra_query={"UserName": user_name},
        )
        access_key = result.get("AccessKey") or {}
        if not access_key.get("AccessKeyId"):
            raise VendorAPIError(
                "Volcengine did not return the new AccessKey", status_code=502
            )
        logger.info("volcengine_access_key_created", user_name=user_name)
        return access_key

    async def delete_access_key(
        self,
        credential: "VolcengineCredential | str",
        access_key_id: "str",
        user_name: "str | None" = None,
    ) -> "None":
        extra = {"AccessKeyId": access_key_id}
        if user_name:
            extra["UserName"] = user_name
        await self._call(
            _as_credential(credential),
            service="iam",
            region="cn-north-1",
            host=IAM_HOST,
            action="DeleteAccessKey",
            version="2018-01-01",
            extra_query=extra,
        )
        logger.info("volcengine_access_key_deleted", access_key_id=access_key_id)

    async def fetch_balance(
        self,
        credential: "VolcengineCredential | str",
    ) -> "dict[str, float]":
        """
        queries the account balance. Amounts come back in fen.
        """
        result = await self._call(
            _as_credential(credential),
            service="billing",
            region="cn-north-1",
            host=BILLING_HOST,
            action="QueryBalanceAcct",
            version="2022-01-01",
            use_x_content_sha256=True,
        )

        def fen(name: "str") -> "float":
            try:
                return float(result.get(name) or 0) / 100
            except (TypeError, ValueError):
                return 0.0

        return {
            "available_balance": fen("AvailableBalance"),
            "cash_balance": fen("CashBalance"),
            "credit_limit": fen("CreditLimit"),
            "frozen_balance": fen("FrozenBalance"),
        }

    async def fetch_usage(
        self,
        credential: "VolcengineCredential | str",
        window: "TimeWindow",
    ) -> "UsageReport":
        """
        fetches organization wide Ark usage for this month. The report is
        keyed by metric name, each metric summed over its daily values.
        """
        result = await self._call(
            _as_credential(credential),
            service="ark",
            region=self._ark_region,
            host=ARK_HOST,
            action="GetUsage",
            version="2024-01-01",
            method="POST",
            body={
                "StartTime": window.month_start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "EndTime": window.now.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "Interval": "1d",
            },
            use_x_content_sha256=True,
        )

        report = UsageReport(pages_fetched=1)
        for name in USAGE_METRICS:
            report.usage_for(name)

        for item in result.get("MetricItems") or []:
            name = _metric_name(item)
            if name not in USAGE_METRICS:
                continue
            for point in item.get("Values") or []:
                report.total_buckets += 1
                try:
                    value = float(point.get("Value") or 0)
                except (TypeError, ValueError):
                    continue
                timestamp = point.get("Timestamp") or 0
                report.usage_for(name).add(value, window.is_today(timestamp))

        logger.debug(
            "volcengine_usage_done",
            prompt_tokens=report.items[PROMPT_TOKENS].month_amount,
            completion_tokens=report.items[COMPLETION_TOKENS].month_amount,
        )
        return report

    async def verify_key(self, api_key: "str") -> "bool":
        """
        checks a composite AK:base64(SK) key by listing its own access keys.
        """
        try:
            await self.fetch_keys(api_key)
        except VendorAPIError as exc:
            if exc.code in THROTTLE_CODES:
                return True
            logger.info("volcengine_key_rejected", code=exc.code)
            return False
        return True
