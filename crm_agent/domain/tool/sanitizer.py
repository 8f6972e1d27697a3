from typing import Any, FrozenSet


SENSITIVE_FIELDS: FrozenSet[str] = frozenset({
    "email",
    "phone",
    "mobile",
    "fax",
    "address",
    "street",
    "postcode",
    "dateofbirth",
    "taxid",
    "abn",
    "bankaccount",
    "bsb",
    "accountnumber",
    "creditcard",
    "cardnumber",
    "password",
    "passwordhash",
    "apikey",
    "secret",
    "token",
    "accesstoken",
    "refreshtoken",
    "ssn",
})


def normalize_key(key: str) -> str:
    """tax_id, taxId and Tax-ID all normalize to taxid"""
    return key.lower().replace("_", "").replace("-", "")


def is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and normalize_key(key) in SENSITIVE_FIELDS


def strip_sensitive(value: Any) -> Any:
    """Return a copy with deny-listed keys removed at every depth"""

    if isinstance(value, dict):
        return {k: strip_sensitive(v) for k, v in value.items() if not is_sensitive(k)}
    if isinstance(value, (list, tuple)):
        return [strip_sensitive(item) for item in value]
    return value
