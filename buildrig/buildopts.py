"""Build options and helpers that turn them into exporter and cache settings."""

from __future__ import annotations

import dataclasses
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable

EXPORTER_IMAGE = "image"
EXPORTER_LOCAL = "local"
EXPORTER_TAR = "tar"
EXPORTER_OCI = "oci"
EXPORTER_DOCKER = "docker"

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}

_PROTOCOL_RE = re.compile(r"([a-z0-9]+)://")
_SCP_RE = re.compile(r"[A-Za-z0-9_-]+@[A-Za-z0-9.-]+:.*", re.S)
_GIT_PROTOCOLS = {"git", "ssh", "http", "https"}

OutputFactory = Callable[[dict[str, str]], BinaryIO]


@dataclass
class Attest:
    type: str = ""
    disabled: bool = False
    attrs: str = ""


@dataclass
class CacheOptionsEntry:
    type: str = ""
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class ExportEntry:
    type: str = ""
    attrs: dict[str, str] = field(default_factory=dict)
    destination: str = ""


@dataclass
class Secret:
    id: str = ""
    file_path: str = ""
    env: str = ""


@dataclass
class SSH:
    id: str = ""
    paths: list[str] = field(default_factory=list)


@dataclass
class BuildOptions:
    context_path: str = ""
    dockerfile_name: str = ""
    named_contexts: dict[str, str] = field(default_factory=dict)
    cache_from: list[CacheOptionsEntry] = field(default_factory=list)
    cache_to: list[CacheOptionsEntry] = field(default_factory=list)
    exports: list[ExportEntry] = field(default_factory=list)
    secrets: list[Secret] = field(default_factory=list)
    ssh: list[SSH] = field(default_factory=list)
    attests: list[Attest] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)
    build_args: dict[str, str] = field(default_factory=dict)
    target: str = ""


@dataclass
class ClientExportEntry:
    """An exporter as handed to the build client."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    output_dir: str = ""
    output: OutputFactory | None = None


def create_attestations(attests: list[Attest]) -> dict[str, str | None]:
    """Map attestation types to their attributes; disabled ones map to None.

    The first entry of each type wins.
    """
    result: dict[str, str | None] = {}
    for attest in attests:
        if attest.type in result:
            continue
        result[attest.type] = None if attest.disabled else attest.attrs
    return result


def create_caches(entries: list[CacheOptionsEntry]) -> list[CacheOptionsEntry]:
    """Copy cache entries so the caller may change them freely."""
    return [CacheOptionsEntry(type=e.type, attrs=dict(e.attrs)) for e in entries]


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f'invalid boolean "{text}"')


def _writer(stream: Any) -> OutputFactory:
    """Wrap an already opened stream as an output factory."""

    def factory(attrs: dict[str, str]) -> BinaryIO:
        if getattr(stream, "closed", False):
            raise ValueError("output stream is closed")
        return stream

    return factory


def _stat(path: str, kind: str) -> os.stat_result | None:
    try:
        return os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(f"invalid destination {kind}: {path}: {exc}") from exc


def create_exports(entries: list[ExportEntry]) -> list[ClientExportEntry]:
    """Validate export entries and prepare their output directories or files."""
    outs: list[ClientExportEntry] = []
    for entry in entries:
        if not entry.type:
            raise ValueError("type is required for output")
        out = ClientExportEntry(type=entry.type, attrs=dict(entry.attrs))

        support_file = support_dir = False
        if out.type == EXPORTER_LOCAL:
            support_dir = True
        elif out.type == EXPORTER_TAR:
            support_file = True
        elif out.type in (EXPORTER_OCI, EXPORTER_DOCKER):
            try:
                tar = _parse_bool(out.attrs.get("tar", ""))
            except ValueError:
                tar = True
            support_file = tar
            support_dir = not tar
        elif out.type == "registry":
            out.type = EXPORTER_IMAGE

        dest = entry.destination
        if support_dir:
            if not dest:
                raise ValueError(f"dest is required for {out.type} exporter")
            if dest == "-":
                raise ValueError(f"dest cannot be stdout for {out.type} exporter")
            st = _stat(dest, "directory")
            if st is not None and not os.path.isdir(dest):
                raise ValueError(f"destination directory {dest} is a file")
            out.output_dir = dest

        if support_file:
            if not dest and out.type != EXPORTER_DOCKER:
                dest = "-"
            if dest == "-":
                stdout = sys.stdout
                if stdout.isatty():
                    raise ValueError(
                        f"dest file is required for {out.type} exporter. "
                        "refusing to write to console"
                    )
                out.output = _writer(getattr(stdout, "buffer", stdout))
            elif dest:
                st = _stat(dest, "file")
                if st is not None and os.path.isdir(dest):
                    raise ValueError(f"destination file {dest} is a directory")
                try:
                    handle = open(dest, "wb")
                except OSError as exc:
                    raise OSError(f"failed to open {exc}") from exc
                out.output = _writer(handle)

        outs.append(out)
    return outs


def _is_http_url(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


def is_remote_url(ref: str) -> bool:
    """Whether a build context reference points at a URL or a Git repository."""
    if _is_http_url(ref):
        return True
    if ref.startswith(("./", "../")):
        return False
    if ref.startswith("github.com/"):
        return True
    match = _PROTOCOL_RE.match(ref)
    if match is not None:
        return match.group(1) in _GIT_PROTOCOLS
    return _SCP_RE.fullmatch(ref) is not None


def _resolve_cache(entry: CacheOptionsEntry, path_key: str) -> CacheOptionsEntry:
    if entry.type != "local":
        return dataclasses.replace(entry, attrs=dict(entry.attrs))
    attrs = {
        key: os.path.abspath(value) if key == path_key and value else value
        for key, value in entry.attrs.items()
    }
    return dataclasses.replace(entry, attrs=attrs)


def _resolve_context(value: str) -> str:
    if is_remote_url(value) or value.startswith("docker-image://"):
        return value
    if value.startswith("oci-layout://"):
        return "oci-layout://" + os.path.abspath(value.removeprefix("oci-layout://"))
    return os.path.abspath(value)


def resolve_option_paths(options: BuildOptions) -> BuildOptions:
    """Return a copy of the options with every local path made absolute."""
    context_path = options.context_path
    local_context = False
    if context_path and context_path != "-" and not is_remote_url(context_path):
        local_context = True
        context_path = os.path.abspath(context_path)

    dockerfile = options.dockerfile_name
    if dockerfile and dockerfile != "-" and local_context and not _is_http_url(dockerfile):
        dockerfile = os.path.abspath(dockerfile)

    exports = [
        dataclasses.replace(
            e,
            attrs=dict(e.attrs),
            destination=(
                os.path.abspath(e.destination)
                if e.destination and e.destination != "-"
                else e.destination
            ),
        )
        for e in options.exports
    ]
    secrets = [
        dataclasses.replace(
            s, file_path=os.path.abspath(s.file_path) if s.file_path else s.file_path
        )
        for s in options.secrets
    ]
    ssh = [
        dataclasses.replace(s, paths=[os.path.abspath(p) if p else p for p in s.paths])
        for s in options.ssh
    ]

    return dataclasses.replace(
        options,
        context_path=context_path,
        dockerfile_name=dockerfile,
        named_contexts={k: _resolve_context(v) for k, v in options.named_contexts.items()},
        cache_from=[_resolve_cache(e, "src") for e in options.cache_from],
        cache_to=[_resolve_cache(e, "dest") for e in options.cache_to],
        exports=exports,
        secrets=secrets,
        ssh=ssh,
    )