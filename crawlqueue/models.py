"""Data models for crawl items and configuration."""

import json
from enum import Enum
from typing import Any, Dict, Literal, NamedTuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import CorruptRecord

COLUMNS = ("configuration", "identifier", "timestamp", "state", "message", "data", "hash")


class ItemState(int, Enum):
    """Item lifecycle states, persisted as integers."""
    PENDING = 0
    IN_PROGRESS = 1
    SUCCESS = 2
    ERROR = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "ItemState":
        return cls[label.upper()]


TERMINAL_STATES = (ItemState.SUCCESS, ItemState.ERROR)


class ItemKey(NamedTuple):
    configuration: str
    identifier: str


class Item(BaseModel):
    """A unit of crawl work."""
    configuration: str
    identifier: str
    state: ItemState = ItemState.PENDING
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    hash: str = ""
    timestamp: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Item":
        """Build an item from a stored row, decoding the JSON payload."""
        try:
            data = json.loads(row["data"]) if row.get("data") else {}
            state = ItemState(int(row["state"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptRecord(
                f"Cannot decode item {row.get('configuration')!r}/{row.get('identifier')!r}: {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise CorruptRecord(
                f"Payload of {row['configuration']!r}/{row['identifier']!r} is not an object"
            )
        return cls(
            configuration=row["configuration"],
            identifier=row["identifier"],
            state=state,
            message=row.get("message") or "",
            data=data,
            hash=row.get("hash") or "",
            timestamp=int(row.get("timestamp") or 0),
        )

    def to_row(self) -> Dict[str, Any]:
        """Serialize to the persisted row shape."""
        return {
            "configuration": self.configuration,
            "identifier": self.identifier,
            "timestamp": self.timestamp,
            "state": self.state.value,
            "message": self.message,
            "data": json.dumps(self.data),
            "hash": self.hash,
        }


class Config(BaseSettings):
    """Runtime configuration, read from CRAWLQUEUE_* environment variables."""
    backend: Literal["sqlite", "json"] = "sqlite"
    data_dir: str = ".crawlqueue"
    sqlite_timeout: float = 30.0
    batch_size: int = 10
    poll_interval: float = 1.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="CRAWLQUEUE_", env_file=".env", extra="ignore")
