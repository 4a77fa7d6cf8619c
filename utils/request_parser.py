from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException, Request

ACCOUNT_ID_ALIASES = ("account_id", "accountId", "accountID", "account", "user_id", "userId", "id")


def _normalize_key(key: str) -> str:
    # "Account ID", "account_id" and "accountId" all become "accountid"
    return key.replace(" ", "").replace("_", "").replace("-", "").lower()


async def parse_incoming_payload(request: Request) -> Dict[str, Any]:
    """
    Normalize inbound payloads from JSON, form, or query params.

    Dashboard calls send JSON, simple integrations send forms or query
    strings. Body values win over query parameters with the same name.
    """
    data: Dict[str, Any] = {}

    content_type = request.headers.get("content-type", "").lower()

    if "application/json" in content_type:
        try:
            body = await request.json()
            data = body if isinstance(body, dict) else {}
        except ValueError:
            data = {}

    if not data and "form" in content_type:
        form = await request.form()
        data = {k: v for k, v in form.items()}

    # Merge query params without overwriting body values
    for key, value in request.query_params.items():
        data.setdefault(key, value)

    return data


def first_value(payload: Dict[str, Any], aliases: Iterable[str]) -> Optional[Any]:
    """Returns the first non-empty value among the aliases, matching keys loosely."""
    normalized = {_normalize_key(k): v for k, v in payload.items()}
    for alias in aliases:
        value = payload.get(alias)
        if value in (None, ""):
            value = normalized.get(_normalize_key(alias))
        if isinstance(value, str):
            value = value.strip()
        if value not in (None, ""):
            return value
    return None


def require_account_id(payload: Dict[str, Any]) -> str:
    account_id = first_value(payload, ACCOUNT_ID_ALIASES)
    if not account_id:
        provided_keys = ", ".join(sorted(payload.keys())) if payload else "none"
        raise HTTPException(
            status_code=422,
            detail=f"account_id is required. Accepted keys: {', '.join(ACCOUNT_ID_ALIASES)}. Provided keys: {provided_keys}",
        )
    return str(account_id)


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")
