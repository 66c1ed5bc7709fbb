"""Data models shared by the launcher library and its HTTP API."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .transport import PipeTransport


class LaunchOptions(BaseModel):
    """Options accepted by :meth:`ChromiumLauncher.launch_server`.

    Field names are snake_case; the camelCase spellings (``userDataDir``,
    ``ignoreDefaultArgs``, ``handleSIGINT`` ...) are accepted as aliases.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    headless: bool | None = None
    args: list[str] = Field(default_factory=list)
    user_data_dir: str | None = None
    devtools: bool = False
    executable_path: str | None = None
    ignore_default_args: bool | list[str] = False
    handle_sigint: bool = Field(default=True, alias="handleSIGINT")
    handle_sigterm: bool = Field(default=True, alias="handleSIGTERM")
    handle_sighup: bool = Field(default=True, alias="handleSIGHUP")
    # Seconds; ``0`` disables the handshake deadline, ``None`` uses the configured default.
    timeout: float | None = None
    dumpio: bool = False
    env: dict[str, str] | None = None
    pipe: bool = False
    slow_mo: Annotated[float, Field(ge=0.0, allow_inf_nan=False)] = 0.0

    @field_validator("timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and not (math.isfinite(value) and value >= 0):
            raise ValueError("timeout must be a finite number greater than or equal to 0")
        return value

    @property
    def resolved_headless(self) -> bool:
        if self.headless is None:
            return not self.devtools
        return self.headless


@dataclass(frozen=True, slots=True)
class ConnectOptions:
    """How to reach the control endpoint of a launched browser.

    Exactly one of :attr:`browser_ws_endpoint` and :attr:`transport` is set.
    """

    browser_ws_endpoint: str | None = None
    transport: PipeTransport | None = None
    slow_mo: float = 0.0

    def __post_init__(self) -> None:
        if (self.browser_ws_endpoint is None) == (self.transport is None):
            raise ValueError("ConnectOptions requires exactly one of browser_ws_endpoint or transport")

    @classmethod
    def for_endpoint(cls, endpoint: str, *, slow_mo: float = 0.0) -> ConnectOptions:
        return cls(browser_ws_endpoint=endpoint, slow_mo=slow_mo)

    @classmethod
    def for_transport(cls, transport: PipeTransport, *, slow_mo: float = 0.0) -> ConnectOptions:
        return cls(transport=transport, slow_mo=slow_mo)

    @property
    def uses_pipe(self) -> bool:
        return self.transport is not None


@dataclass(frozen=True, slots=True)
class RevisionInfo:
    """Where a Chromium revision lives locally and where it can be downloaded."""

    revision: str
    platform: str
    folder_path: str
    executable_path: str
    download_url: str
    local: bool

    def asdict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "platform": self.platform,
            "folder_path": self.folder_path,
            "executable_path": self.executable_path,
            "download_url": self.download_url,
            "local": self.local,
        }


class ServerStatus(str, Enum):
    READY = "READY"
    TERMINATING = "TERMINATING"
    DEAD = "DEAD"


class ServerCreateRequest(BaseModel):
    """Inbound payload for launching a browser server over HTTP."""

    model_config = ConfigDict(extra="forbid")

    headless: bool | None = None
    devtools: bool = False
    args: list[str] = Field(default_factory=list)
    ignore_default_args: bool | list[str] = False
    user_data_dir: str | None = None
    timeout: Annotated[float | None, Field(ge=0.0, le=600.0, allow_inf_nan=False)] = None
    env: dict[str, str] | None = None
    dumpio: bool = False
    idle_ttl_seconds: Annotated[int | None, Field(ge=30, le=86400)] = None
    labels: dict[str, str] | None = None

    def launch_options(self) -> LaunchOptions:
        """Translate the request into launch options for a network-mode server."""

        return LaunchOptions(
            headless=self.headless,
            devtools=self.devtools,
            args=list(self.args),
            ignore_default_args=self.ignore_default_args,
            user_data_dir=self.user_data_dir,
            timeout=self.timeout,
            env=self.env,
            dumpio=self.dumpio,
            pipe=False,
            # Signal forwarding is owned by the service process, not per request.
            handle_sigint=False,
            handle_sigterm=False,
            handle_sighup=False,
        )


class ServerSummary(BaseModel):
    id: str
    status: ServerStatus
    created_at: datetime
    last_seen_at: datetime
    pid: int | None
    idle_ttl_seconds: int
    labels: dict[str, str]


class ServerDetail(ServerSummary):
    ws_endpoint: str | None


class ServerDeleteResponse(BaseModel):
    id: str
    status: ServerStatus


class RevisionResponse(BaseModel):
    revision: str
    platform: str
    folder_path: str
    executable_path: str
    download_url: str
    local: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    checks: dict[str, str]


__all__ = [
    "ConnectOptions",
    "HealthResponse",
    "LaunchOptions",
    "RevisionInfo",
    "RevisionResponse",
    "ServerCreateRequest",
    "ServerDeleteResponse",
    "ServerDetail",
    "ServerStatus",
    "ServerSummary",
]
