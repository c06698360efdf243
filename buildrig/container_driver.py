"""Driver that runs the build daemon in a dedicated Docker container.

The Docker API object given through ``InitConfig.docker_api`` must provide:

- ``container_inspect(name)``: a mapping shaped like the engine's inspect
  output (``{"State": {"Running": bool}, "Mounts": [{"Name": ...}]}``);
  raises ``LookupError`` when the container does not exist
- ``image_create(image, registry_auth)``: pulls an image
- ``image_inspect(image)``: raises when the image is not present locally
- ``info()``: a mapping with ``"CgroupDriver"`` and ``"SecurityOptions"``
- ``container_create(name, config, host_config)``
- ``copy_to_container(name, path, tar_bytes)``
- ``container_start(name)``, ``container_stop(name)``
- ``container_remove(name, remove_volumes, force)``
- ``volume_remove(name, force)``
- ``exec_run(name, cmd)``: returns ``(exit_code, stdout_bytes, stderr_bytes)``
- ``container_logs(name)``: returns ``(stdout_bytes, stderr_bytes)``
"""

from __future__ import annotations

import dataclasses
import io
import os
import posixpath
import shutil
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Any, Callable

from buildrig.driver import (
    DEFAULT_IMAGE,
    Driver,
    DriverError,
    DriverNotConnecting,
    Factory,
    Feature,
    Info,
    InitConfig,
    Status,
)

PRIORITY_SUPPORTED = 30
PRIORITY_UNSUPPORTED = 70

VOLUME_STATE_SUFFIX = "_state"
BUILDKIT_STATE_DIR = "/var/lib/buildkit"
BUILDKIT_CONFIG_DIR = "/etc/buildkit"
DEFAULT_CGROUP_PARENT = "/docker/buildx"
HOST_NETWORK_FLAG = "--allow-insecure-entitlement=network.host"

_MAX_WAIT_TRIES = 15

Connector = Callable[[Any, str], Any]


def _wrap(logger: Any, name: str, fn: Callable[[], Any]) -> Any:
    wrap = getattr(logger, "wrap", None)
    if wrap is None:
        return fn()
    return wrap(name, fn)


def _log(logger: Any, stream: int, data: bytes) -> None:
    log = getattr(logger, "log", None)
    if log is not None:
        log(stream, data)


def _decode_security_options(options: list[str]) -> list[dict[str, str]]:
    decoded = []
    for opt in options or []:
        if "=" not in opt:
            decoded.append({"name": opt})
            continue
        fields: dict[str, str] = {}
        for part in opt.split(","):
            key, sep, value = part.partition("=")
            if not sep:
                raise DriverError(f"invalid security option {opt!r}")
            fields[key] = value
        if "name" not in fields:
            raise DriverError(f"invalid security option {opt!r}")
        decoded.append(fields)
    return decoded


def write_config_files(files: dict[str, bytes]) -> str:
    """Write config files into a fresh temp directory laid out as in the container.

    Each file lands under ``<tmp>/etc/buildkit/<name>``. The caller owns the
    returned directory and must remove it.
    """
    tmp_dir = tempfile.mkdtemp(prefix="buildkitd-config")
    try:
        for name, data in files.items():
            target = posixpath.normpath(posixpath.join(BUILDKIT_CONFIG_DIR, name))
            path = Path(tmp_dir, target.lstrip("/"))
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
    except BaseException:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
    return tmp_dir


def _owned_by_root(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def _tar_directory(src: str) -> bytes:
    buf = io.BytesIO()
    root = Path(src)
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for path in sorted(root.rglob("*")):
            tar.add(
                path,
                arcname=path.relative_to(root).as_posix(),
                recursive=False,
                filter=_owned_by_root,
            )
    return buf.getvalue()


class ContainerDriver(Driver):
    """Manages a build daemon container through the Docker API."""

    def __init__(
        self,
        factory: Factory,
        config: InitConfig,
        net_mode: str = "",
        image: str = "",
        cgroup_parent: str = "",
        env: list[str] | None = None,
        connect: Connector | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(factory, config)
        self.net_mode = net_mode
        self.image = image
        self.cgroup_parent = cgroup_parent
        self.env = list(env or [])
        self._connect = connect
        self._sleep = sleep

    @property
    def _api(self) -> Any:
        return self.config.docker_api

    @property
    def _name(self) -> str:
        return self.config.name

    @property
    def _volume_name(self) -> str:
        return self._name + VOLUME_STATE_SUFFIX

    def bootstrap(self, logger: Any) -> None:
        def boot() -> None:
            try:
                self._api.container_inspect(self._name)
            except LookupError:
                self._create(logger)
                return

            def start() -> None:
                self._api.container_start(self._name)
                self._wait(logger)

            _wrap(logger, "starting container " + self._name, start)

        _wrap(logger, "[internal] booting buildkit", boot)

    def _registry_auth(self, image: str) -> str:
        auth = self.config.auth
        if callable(auth):
            return auth(image)
        return ""

    def _pull(self, image: str, logger: Any) -> None:
        def pull() -> None:
            self._api.image_create(image, self._registry_auth(image))

        try:
            _wrap(logger, "pulling image " + image, pull)
        except Exception:
            # Fall back to a local copy of the image when one exists.
            try:
                self._api.image_inspect(image)
            except Exception:
                raise
            _wrap(logger, "pulling failed, using local image " + image, lambda: None)

    def _host_config(self) -> dict[str, Any]:
        host_config: dict[str, Any] = {
            "Privileged": True,
            "Mounts": [
                {
                    "Type": "volume",
                    "Source": self._volume_name,
                    "Target": BUILDKIT_STATE_DIR,
                }
            ],
            # Reaps exited processes started through the daemon's container API.
            "Init": True,
        }
        if self.net_mode:
            host_config["NetworkMode"] = self.net_mode
        try:
            engine = self._api.info()
        except Exception:
            return host_config
        if engine.get("CgroupDriver") == "cgroupfs":
            host_config["CgroupParent"] = self.cgroup_parent or DEFAULT_CGROUP_PARENT
        for opt in _decode_security_options(engine.get("SecurityOptions") or []):
            if opt.get("name") == "userns":
                host_config["UsernsMode"] = "host"
                break
        return host_config

    def _create(self, logger: Any) -> None:
        image = self.image or DEFAULT_IMAGE
        self._pull(image, logger)

        config: dict[str, Any] = {"Image": image, "Env": list(self.env)}
        if self.config.buildkit_flags is not None:
            config["Cmd"] = list(self.config.buildkit_flags)

        def create() -> None:
            host_config = self._host_config()
            self._api.container_create(self._name, config, host_config)
            self._copy_to_container(self.config.files)
            self._api.container_start(self._name)
            self._wait(logger)

        _wrap(logger, "creating container " + self._name, create)

    def _copy_to_container(self, files: dict[str, bytes]) -> None:
        src = write_config_files(files)
        try:
            archive = _tar_directory(src)
        finally:
            shutil.rmtree(src, ignore_errors=True)
        self._api.copy_to_container(self._name, "/", archive)

    def _exec(self, cmd: list[str]) -> tuple[int, bytes, bytes]:
        return self._api.exec_run(self._name, cmd)

    def _wait(self, logger: Any) -> None:
        attempt = 1
        while True:
            stdout = stderr = b""
            try:
                code, stdout, stderr = self._exec(["buildctl", "debug", "workers"])
                error: Exception | None = (
                    DriverError(f"exit code {code}") if code != 0 else None
                )
            except Exception as exc:
                error = exc
            if error is None:
                return
            if attempt > _MAX_WAIT_TRIES:
                self._copy_logs(logger)
                if stdout:
                    _log(logger, 1, stdout)
                if stderr:
                    _log(logger, 2, stderr)
                raise error
            self._sleep(attempt * 0.12)
            attempt += 1

    def _copy_logs(self, logger: Any) -> None:
        try:
            stdout, stderr = self._api.container_logs(self._name)
        except Exception:
            return
        if stdout:
            _log(logger, 1, stdout)
        if stderr:
            _log(logger, 2, stderr)

    def info(self) -> Info:
        try:
            container = self._api.container_inspect(self._name)
        except LookupError:
            return Info(status=Status.INACTIVE)
        if container.get("State", {}).get("Running"):
            return Info(status=Status.RUNNING)
        return Info(status=Status.STOPPED)

    def version(self) -> str:
        code, stdout, stderr = self._exec(["buildkitd", "--version"])
        if code != 0:
            if stderr:
                raise DriverError(f"{stderr.decode(errors='replace')}: exit code {code}")
            raise DriverError(f"exit code {code}")
        text = stdout.decode(errors="replace")
        fields = text.split()
        if len(fields) != 4:
            raise DriverError(f"unexpected version format: {text}")
        return fields[2]

    def stop(self, force: bool) -> None:
        if self.info().status == Status.RUNNING:
            self._api.container_stop(self._name)

    def rm(self, force: bool, rm_volume: bool, rm_daemon: bool) -> None:
        if self.info().status == Status.INACTIVE:
            return
        container = self._api.container_inspect(self._name)
        if not rm_daemon:
            return
        self._api.container_remove(self._name, remove_volumes=True, force=force)
        for mount in container.get("Mounts") or []:
            if mount.get("Name") != self._volume_name:
                continue
            if rm_volume:
                self._api.volume_remove(self._volume_name, force=False)
                return

    def client(self) -> Any:
        if self._connect is None:
            raise DriverNotConnecting(f"no connector available for container {self._name}")
        return self._connect(self._api, self._name)

    def features(self) -> dict[Feature, bool]:
        return {feature: True for feature in Feature}

    def is_moby_driver(self) -> bool:
        return False


class ContainerFactory(Factory):
    name = "docker-container"
    usage = "docker-container"

    def __init__(
        self,
        connect: Connector | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._connect = connect
        self._sleep = sleep

    def priority(self, endpoint: str, api: Any) -> int:
        return PRIORITY_UNSUPPORTED if api is None else PRIORITY_SUPPORTED

    def new(self, cfg: InitConfig) -> ContainerDriver:
        if cfg.docker_api is None:
            raise DriverError(f"{self.name} driver requires docker API access")
        flags = cfg.buildkit_flags
        net_mode = image = cgroup_parent = ""
        env: list[str] = []
        for key, value in cfg.driver_opts.items():
            if key == "network":
                net_mode = value
                if value == "host":
                    flags = [*(flags or []), HOST_NETWORK_FLAG]
            elif key == "image":
                image = value
            elif key == "cgroup-parent":
                cgroup_parent = value
            elif key.startswith("env."):
                env_name = key.removeprefix("env.")
                if not env_name:
                    raise DriverError(f'invalid env option "{key}", expecting env.FOO=bar')
                env.append(f"{env_name}={value}")
            else:
                raise DriverError(f"invalid driver option {key} for docker-container driver")
        config = dataclasses.replace(
            cfg, buildkit_flags=list(flags) if flags is not None else None
        )
        return ContainerDriver(
            self,
            config,
            net_mode=net_mode,
            image=image,
            cgroup_parent=cgroup_parent,
            env=env,
            connect=self._connect,
            sleep=self._sleep,
        )

    def allows_instances(self) -> bool:
        return True