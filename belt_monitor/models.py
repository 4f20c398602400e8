"""
Data models used across the Belt UserOp Monitor.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

EventKind = Literal["deployment", "user_op"]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class Scope:
    stream_id: str       # e.g. "369" (chain id)
    substream_id: str    # e.g. "v0.7:user_op"

    def key(self, *parts: str) -> str:
        """Build a scope-qualified state-store key."""
        return ":".join(("belt", self.stream_id, self.substream_id) + parts)

    def for_kind(self, kind: EventKind) -> Scope:
        return Scope(self.stream_id, f"{self.substream_id}:{kind}")

    def __str__(self) -> str:
        return f"{self.stream_id}/{self.substream_id}"


@dataclass(frozen=True)
class OperationEvent:
    id: str                  # userOpHash
    position: int            # block number
    timestamp: int           # unix seconds
    success: bool
    cost: int                # actualGasCost in wei
    sender: str
    paymaster: str = ZERO_ADDRESS
    tx_hash: str = ""
    block_hash: str = ""
    chain_id: int = 369
    entry_point_version: str = ""
    gas_used: int = 0

    kind: EventKind = field(default="user_op", init=False)


@dataclass(frozen=True)
class DeploymentEvent:
    id: str
    position: int
    timestamp: int
    account: str             # the created smart account
    factory: str             # the factory that deployed it
    paymaster: str = ZERO_ADDRESS
    entry_point: str = ""
    tx_hash: str = ""
    block_hash: str = ""
    chain_id: int = 369
    entry_point_version: str = ""

    kind: EventKind = field(default="deployment", init=False)


DomainEvent = Union[OperationEvent, DeploymentEvent]


@dataclass(frozen=True)
class WalletState:
    address: str
    chain_id: int
    factory: str
    entry_point_version: str
    deployed_at: int         # unix seconds
    total_user_ops: int
    total_gas_spent: int     # wei


# Discord embed limits
_MAX_TITLE = 256
_MAX_DESCRIPTION = 4096
_MAX_FIELDS = 25
_MAX_FIELD_NAME = 256
_MAX_FIELD_VALUE = 1024
_MAX_FOOTER = 2048


@dataclass(frozen=True)
class EmbedField:
    name: str
    value: str
    inline: bool = True

    def __post_init__(self) -> None:
        if not self.name or len(self.name) > _MAX_FIELD_NAME:
            raise ValueError(f"Embed field name must be 1–{_MAX_FIELD_NAME} chars: {self.name!r}")
        if not self.value or len(self.value) > _MAX_FIELD_VALUE:
            raise ValueError(f"Embed field '{self.name}' value must be 1–{_MAX_FIELD_VALUE} chars")


@dataclass(frozen=True)
class Embed:
    """A single rich message block posted to the Discord webhook."""

    title: str
    color: int
    fields: tuple[EmbedField, ...]
    timestamp: str           # ISO-8601
    footer: str
    description: str = ""

    def __post_init__(self) -> None:
        if not self.title or len(self.title) > _MAX_TITLE:
            raise ValueError(f"Embed title must be 1–{_MAX_TITLE} chars")
        if len(self.description) > _MAX_DESCRIPTION:
            raise ValueError(f"Embed description exceeds {_MAX_DESCRIPTION} chars")
        if not 0 <= self.color <= 0xFFFFFF:
            raise ValueError(f"Embed color out of range: {self.color:#x}")
        if len(self.fields) > _MAX_FIELDS:
            raise ValueError(f"Embed has {len(self.fields)} fields, max is {_MAX_FIELDS}")
        if len(self.footer) > _MAX_FOOTER:
            raise ValueError(f"Embed footer exceeds {_MAX_FOOTER} chars")

    def to_dict(self) -> dict:
        data: dict = {
            "title": self.title,
            "color": self.color,
            "fields": [{"name": f.name, "value": f.value, "inline": f.inline} for f in self.fields],
            "timestamp": self.timestamp,
            "footer": {"text": self.footer},
        }
        if self.description:
            data["description"] = self.description
        return data
