import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote

ALGORITHM = "HMAC-SHA256"


@dataclass(frozen=True, slots=True)
class SignedRequest:
    """
    SignedRequest carries everything needed to send a Volcengine API
    request: the final URL and the headers that were signed.
    """

    url: "str"
    authorization: "str"
    x_date: "str"
    host: "str"
    canonical_request: "str"
    signature: "str"
    body: "str" = ""
    # only set in X-Content-Sha256 mode
    x_content_sha256: "str | None" = None

    def headers(self) -> "dict[str, str]":
        headers = {
            "Authorization": self.authorization,
            "X-Date": self.x_date,
            "Host": self.host,
            "Content-Type": "application/json",
        }
        if self.x_content_sha256 is not None:
            headers["X-Content-Sha256"] = self.x_content_sha256
        return headers


def _hmac(key: "bytes", data: "str") -> "bytes":
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).digest()


def _sha256_hex(data: "str") -> "str":
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _encode(value: "str") -> "str":
    # same escaping as JavaScript's encodeURIComponent
    return quote(value, safe="-_.!~*'()")


def canonical_query(query: "dict[str, str]") -> "str":
    return "&".join(
        f"{_encode(k)}={_encode(str(query[k]))}" for k in sorted(query)
    )


def signing_key(
    secret_access_key: "str",
    date_stamp: "str",
    region: "str",
    service: "str",
) -> "bytes":
    k_date = _hmac(secret_access_key.encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "request")


def sign_request(
    access_key_id: "str",
    secret_access_key: "str",
    service: "str",
    region: "str",
    host: "str",
    method: "str",
    path: "str",
    query: "dict[str, str]",
    body: "str" = "",
    use_x_content_sha256: "bool" = False,
    now: "datetime | None" = None,
) -> "SignedRequest":
    """
    signs a Volcengine request with the SigV4 style HMAC-SHA256 scheme.

    The result depends only on the arguments, so passing a fixed `now`
    gives byte identical output across calls.
    """
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    x_date = moment.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = x_date[:8]
    method = method.upper()

    query_string = canonical_query(query)
    payload_hash = _sha256_hex(body)

    if use_x_content_sha256:
        canonical_headers = (
            "content-type:application/json\n"
            f"host:{host}\n"
            f"x-content-sha256:{payload_hash}\n"
            f"x-date:{x_date}\n"
        )
        signed_headers = "content-type;host;x-content-sha256;x-date"
    elif body and method == "POST":
        canonical_headers = (
            f"content-type:application/json\nhost:{host}\nx-date:{x_date}\n"
        )
        signed_headers = "content-type;host;x-date"
    else:
        canonical_headers = f"host:{host}\nx-date:{x_date}\n"
        signed_headers = "host;x-date"

    canonical_request = "\n".join(
        [
            method,
            path,
            query_string,
            canonical_headers,
            signed_headers,
            payload_hash,
        ]
    )

    credential_scope = f"{date_stamp}/{region}/{service}/request"
    string_to_sign = "\n".join(
        [ALGORITHM, x_date, credential_scope, _sha256_hex(canonical_request)]
    )

    key = signing_key(secret_access_key, date_stamp, region, service)
    signature = hmac.new(
        key, string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()

    authorization = (
        f"{ALGORITHM} Credential={access_key_id}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    url = f"https://{host}{path}"
    if query_string:
        url += f"?{query_string}"

    return SignedRequest(
        url=url,
        authorization=authorization,
        x_date=x_date,
        host=host,
        canonical_request=canonical_request,
        signature=signature,
        body=body,
        x_content_sha256=payload_hash if use_x_content_sha256 else None,
    )
