"""Credential bundle kept per tenant so the bridge can resume without re-pairing.

Binary values travel as ``{"type": "Buffer", "data": "<base64>"}`` which is the
encoding the protocol bridge uses on its side, so a stored ``auth_state`` can be
handed back to it untouched.
"""

import base64
from dataclasses import dataclass, field
from typing import Any, Mapping

BUFFER_TYPE = "Buffer"


def encode_buffers(value: Any) -> Any:
    """Replace every ``bytes`` value with its JSON-safe Buffer form."""
    if isinstance(value, (bytes, bytearray)):
        return {"type": BUFFER_TYPE, "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Mapping):
        return {key: encode_buffers(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_buffers(item) for item in value]
    return value


def decode_buffers(value: Any) -> Any:
    """Inverse of :func:`encode_buffers`; also accepts Node's ``data: [int, ...]`` form."""
    if isinstance(value, Mapping):
        if value.get("type") == BUFFER_TYPE and "data" in value and len(value) == 2:
            data = value["data"]
            if isinstance(data, str):
                return base64.b64decode(data)
            if isinstance(data, list):
                return bytes(data)
        return {key: decode_buffers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_buffers(item) for item in value]
    return value


@dataclass
class CredentialBundle:
    creds: dict[str, Any] = field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "CredentialBundle":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.creds and not self.keys

    def merge_creds(self, update: Mapping[str, Any] | None) -> None:
        if update:
            self.creds.update(update)

    def merge_keys(self, update: Mapping[str, Mapping[str, Any]] | None) -> None:
        """Overwrite by id inside each category; ids missing from ``update`` are kept."""
        if not update:
            return
        for category, values in update.items():
            bucket = self.keys.setdefault(category, {})
            for key_id, value in values.items():
                bucket[key_id] = value

    def to_json(self) -> dict[str, Any]:
        return {"creds": encode_buffers(self.creds), "keys": encode_buffers(self.keys)}

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> "CredentialBundle":
        if not data:
            return cls.empty()
        decoded = decode_buffers(data)
        return cls(creds=dict(decoded.get("creds") or {}), keys=dict(decoded.get("keys") or {}))
