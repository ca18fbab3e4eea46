from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from llm_autotrader.constants import RECV_WINDOW_MS


def build_query_string(params: Optional[Dict[str, Any]]) -> str:
    """Encode params in insertion order, exactly as they go on the wire."""
    if not params:
        return ""
    return urlencode([(k, v) for k, v in params.items() if v is not None])


def minified_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def sign_v5(
    *,
    timestamp_ms: int,
    api_key: str,
    secret_key: str,
    payload: str,
    recv_window: int = RECV_WINDOW_MS,
) -> str:
    """Bybit v5 signature: hex(HMAC_SHA256(secret, timestamp + apiKey + recvWindow + payload)).

    ``payload`` is the query string for GET and the raw JSON body for POST.
    """
    message = f"{timestamp_ms}{api_key}{recv_window}{payload}"
    return hmac.new(
        secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def auth_headers(
    *,
    timestamp_ms: int,
    api_key: str,
    secret_key: str,
    payload: str,
    recv_window: int = RECV_WINDOW_MS,
) -> Dict[str, str]:
    signature = sign_v5(
        timestamp_ms=timestamp_ms,
        api_key=api_key,
        secret_key=secret_key,
        payload=payload,
        recv_window=recv_window,
    )
    return {
        "X-BAPI-API-KEY": api_key,
        "X-BAPI-SIGN": signature,
        "X-BAPI-SIGN-TYPE": "2",
        "X-BAPI-TIMESTAMP": str(timestamp_ms),
        "X-BAPI-RECV-WINDOW": str(recv_window),
        "Content-Type": "application/json",
    }
