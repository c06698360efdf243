"""Driver that talks to an already running build daemon over an endpoint."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlsplit

from buildrig.driver import (
    Driver,
    DriverError,
    DriverNotConnecting,
    Factory,
    Feature,
    Info,
    InitConfig,
    Status,
)
from buildrig.endpoint import is_valid_endpoint

PRIORITY_SUPPORTED = 20
PRIORITY_UNSUPPORTED = 90

Connector = Callable[[str, "TLSOptions | None"], Any]


@dataclass
class TLSOptions:
    server_name: str = ""
    ca_cert: str = ""
    cert: str = ""
    key: str = ""


class RemoteDriver(Driver):
    """A driver whose daemon is managed elsewhere; it only connects."""

    def __init__(
        self,
        factory: Factory,
        config: InitConfig,
        tls: TLSOptions | None = None,
        connect: Connector | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(factory, config)
        self.tls = tls
        self._connect = connect
        self._sleep = sleep

    def bootstrap(self, logger: Any) -> None:
        attempt = 0
        while self.info().status == Status.INACTIVE:
            self._sleep(min(attempt, 10))
            attempt += 1

    def info(self) -> Info:
        try:
            self.client().list_workers()
        except Exception:
            return Info(status=Status.INACTIVE)
        return Info(status=Status.RUNNING)

    def version(self) -> str:
        return ""

    def stop(self, force: bool) -> None:
        return None

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        return None

    def client(self) -> Any:
        if self._connect is None:
            raise DriverNotConnecting(
                f"no connector available for {self.config.endpoint_addr}"
            )
        return self._connect(self.config.endpoint_addr, self.tls)

    def features(self) -> dict[Feature, bool]:
        return {feature: True for feature in Feature}

    def is_moby_driver(self) -> bool:
        return False


_TLS_PATH_FIELDS = {"cacert": "ca_cert", "cert": "cert", "key": "key"}


class RemoteFactory(Factory):
    name = "remote"
    usage = "remote"

    def __init__(self, connect: Connector | None = None) -> None:
        self._connect = connect

    def priority(self, endpoint: str, api: Any) -> int:
        return PRIORITY_SUPPORTED if is_valid_endpoint(endpoint) else PRIORITY_UNSUPPORTED

    def new(self, cfg: InitConfig) -> RemoteDriver:
        if cfg.files:
            raise DriverError("setting config file is not supported for remote driver")
        if cfg.buildkit_flags:
            raise DriverError("setting buildkit flags is not supported for remote driver")

        tls = TLSOptions()
        tls_enabled = False
        for key, value in cfg.driver_opts.items():
            if key == "servername":
                tls.server_name = value
            elif key in _TLS_PATH_FIELDS:
                if not os.path.isabs(value):
                    raise DriverError(f"non-absolute path '{value}' provided for {key}")
                setattr(tls, _TLS_PATH_FIELDS[key], value)
            else:
                raise DriverError(f"invalid driver option {key} for remote driver")
            tls_enabled = True

        if not tls_enabled:
            return RemoteDriver(self, cfg, None, self._connect)

        if not tls.server_name:
            try:
                tls.server_name = urlsplit(cfg.endpoint_addr).hostname or ""
            except ValueError as exc:
                raise DriverError(str(exc)) from exc
        missing = []
        if not tls.ca_cert:
            missing.append("cacert")
        if tls.cert and not tls.key:
            missing.append("key")
        if tls.key and not tls.cert:
            missing.append("cert")
        if missing:
            raise DriverError(f"tls enabled, but missing keys {', '.join(missing)}")
        return RemoteDriver(self, cfg, tls, self._connect)

    def allows_instances(self) -> bool:
        return True