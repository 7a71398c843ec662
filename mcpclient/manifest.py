"""MCP manifest model: parsing, validation and entrypoint selection."""

from __future__ import annotations

import json
import platform
import re
import sys
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "ManifestError",
    "PackageInfo",
    "BundleInfo",
    "TransportInfo",
    "Entrypoint",
    "PermissionsInfo",
    "LimitsInfo",
    "Manifest",
    "parse",
    "validate",
    "select_entrypoint",
    "current_platform",
    "is_system_command",
    "is_valid_package_id",
    "is_valid_digest",
    "is_valid_os",
    "is_valid_arch",
]

SYSTEM_COMMANDS = frozenset(
    {"node", "python", "python3", "ruby", "java", "deno", "bun", "npx", "uvx", "uv"}
)
VALID_OS = frozenset({"linux", "darwin", "windows"})
VALID_ARCH = frozenset({"amd64", "arm64"})

_PACKAGE_PART = re.compile(r"[a-zA-Z0-9_-]+")
_DIGEST = re.compile(r"sha256:[a-f0-9]{64}")
_JSON_NUMBER = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")

_MACHINE_TO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


class ManifestError(ValueError):
    """Raised when a manifest cannot be parsed, validated or used."""


@dataclass
class PackageInfo:
    id: str = ""
    version: str = ""
    git_sha: str = ""


@dataclass
class BundleInfo:
    digest: str = ""
    size_bytes: int = 0


@dataclass
class TransportInfo:
    type: str = ""
    port: int = 0


@dataclass
class Entrypoint:
    os: str = ""
    arch: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)


@dataclass
class PermissionsInfo:
    network: list[str] = field(default_factory=list)
    environment: list[str] = field(default_factory=list)
    subprocess: bool = False
    filesystem: list[str] = field(default_factory=list)


@dataclass
class LimitsInfo:
    max_cpu: int = 0
    max_memory: str = ""
    max_pids: int = 0
    max_fds: int = 0
    timeout: str = ""


@dataclass
class Manifest:
    schema_version: str = ""
    package: PackageInfo = field(default_factory=PackageInfo)
    bundle: BundleInfo = field(default_factory=BundleInfo)
    transport: TransportInfo = field(default_factory=TransportInfo)
    entrypoints: list[Entrypoint] = field(default_factory=list)
    permissions: PermissionsInfo = field(default_factory=PermissionsInfo)
    limits: LimitsInfo = field(default_factory=LimitsInfo)
    hub_format: bool = False


class _Number(str):
    """A JSON non-integer number kept as its literal text."""


# --- typed field readers -------------------------------------------------


def _obj(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestError(f"{where}: expected object")
    return value


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str) or isinstance(value, _Number):
        raise ManifestError(f"{where}: expected string")
    return str(value)


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ManifestError(f"{where}: expected integer")
    return value


def _boolean(value: Any, where: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ManifestError(f"{where}: expected boolean")
    return value


def _strings(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ManifestError(f"{where}: expected array of strings")
    return [_string(item, f"{where}[{pos}]") for pos, item in enumerate(value)]


def _objects(value: Any, where: str) -> list[dict]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ManifestError(f"{where}: expected array")
    return [_obj(item, f"{where}[{pos}]") for pos, item in enumerate(value)]


def _schema_version(value: Any, *, number_only: bool) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ManifestError("schema_version: expected string or number")
    if isinstance(value, (int, _Number)):
        return str(value)
    if isinstance(value, str):
        if number_only and not _JSON_NUMBER.fullmatch(value):
            raise ManifestError(f"schema_version: invalid number literal {value!r}")
        return value
    raise ManifestError("schema_version: expected string or number")


# --- parsing -------------------------------------------------------------


def parse(data: bytes | str) -> Manifest:
    """Parse manifest JSON in either the client or the hub format."""
    if not data:
        raise ManifestError("manifest data cannot be empty")
    try:
        raw = json.loads(data, parse_float=_Number)
    except (ValueError, RecursionError) as exc:
        raise ManifestError(f"failed to parse manifest JSON: {exc}") from exc

    if raw is None:
        return Manifest()
    if not isinstance(raw, dict):
        raise ManifestError("failed to parse manifest JSON: expected a JSON object")

    if "runtime" in raw:
        try:
            return _parse_hub(raw)
        except ManifestError as exc:
            raise ManifestError(f"failed to parse hub manifest: {exc}") from exc
    try:
        return _parse_client(raw)
    except ManifestError as exc:
        raise ManifestError(f"failed to parse manifest JSON: {exc}") from exc


def _parse_client(raw: dict) -> Manifest:
    package = _obj(raw.get("package"), "package")
    bundle = _obj(raw.get("bundle"), "bundle")
    transport = _obj(raw.get("transport"), "transport")
    perms = _obj(raw.get("permissions_requested"), "permissions_requested")
    limits = _obj(raw.get("limits_recommended"), "limits_recommended")

    entrypoints = [
        Entrypoint(
            os=_string(ep.get("os"), f"entrypoints[{pos}].os"),
            arch=_string(ep.get("arch"), f"entrypoints[{pos}].arch"),
            command=_string(ep.get("command"), f"entrypoints[{pos}].command"),
            args=_strings(ep.get("args"), f"entrypoints[{pos}].args"),
        )
        for pos, ep in enumerate(_objects(raw.get("entrypoints"), "entrypoints"))
    ]

    return Manifest(
        schema_version=_schema_version(raw.get("schema_version"), number_only=False),
        package=PackageInfo(
            id=_string(package.get("id"), "package.id"),
            version=_string(package.get("version"), "package.version"),
            git_sha=_string(package.get("git_sha"), "package.git_sha"),
        ),
        bundle=BundleInfo(
            digest=_string(bundle.get("digest"), "bundle.digest"),
            size_bytes=_integer(bundle.get("size_bytes"), "bundle.size_bytes"),
        ),
        transport=TransportInfo(
            type=_string(transport.get("type"), "transport.type"),
            port=_integer(transport.get("port"), "transport.port"),
        ),
        entrypoints=entrypoints,
        permissions=PermissionsInfo(
            network=_strings(perms.get("network"), "permissions_requested.network"),
            environment=_strings(
                perms.get("environment"), "permissions_requested.environment"
            ),
            subprocess=_boolean(
                perms.get("subprocess"), "permissions_requested.subprocess"
            ),
            filesystem=_strings(
                perms.get("filesystem"), "permissions_requested.filesystem"
            ),
        ),
        limits=LimitsInfo(
            max_cpu=_integer(limits.get("max_cpu"), "limits_recommended.max_cpu"),
            max_memory=_string(
                limits.get("max_memory"), "limits_recommended.max_memory"
            ),
            max_pids=_integer(limits.get("max_pids"), "limits_recommended.max_pids"),
            max_fds=_integer(limits.get("max_fds"), "limits_recommended.max_fds"),
            timeout=_string(limits.get("timeout"), "limits_recommended.timeout"),
        ),
    )


def _parse_hub(raw: dict) -> Manifest:
    package = _obj(raw.get("package"), "package")
    runtime = _obj(raw.get("runtime"), "runtime")
    entrypoint = _obj(raw.get("entrypoint"), "entrypoint")

    ep_os, ep_arch = "linux", "amd64"
    if runtime.get("platform") is not None:
        plat = _obj(runtime["platform"], "runtime.platform")
        ep_os = _string(plat.get("os"), "runtime.platform.os") or ep_os
        ep_arch = _string(plat.get("arch"), "runtime.platform.arch") or ep_arch

    command_parts = _strings(entrypoint.get("command"), "entrypoint.command")
    command = command_parts[0] if command_parts else ""
    args = command_parts[1:] + _strings(entrypoint.get("args"), "entrypoint.args")

    manifest = Manifest(
        schema_version=_schema_version(raw.get("schema_version"), number_only=True),
        package=PackageInfo(
            id=_string(package.get("id"), "package.id"),
            version=_string(package.get("version"), "package.version"),
            git_sha=_string(package.get("git_sha"), "package.git_sha"),
        ),
        transport=TransportInfo(type="stdio"),
        entrypoints=[Entrypoint(os=ep_os, arch=ep_arch, command=command, args=args)],
        hub_format=True,
    )

    # System commands such as node or uv spawn children, so hub packages
    # are allowed subprocesses.
    manifest.permissions.subprocess = True
    if raw.get("permissions") is not None:
        perms = _obj(raw["permissions"], "permissions")
        if perms.get("network") is not None:
            network = _obj(perms["network"], "permissions.network")
            manifest.permissions.network = _strings(
                network.get("outbound"), "permissions.network.outbound"
            )
        if perms.get("filesystem") is not None:
            filesystem = _obj(perms["filesystem"], "permissions.filesystem")
            manifest.permissions.filesystem = _strings(
                filesystem.get("read"), "permissions.filesystem.read"
            ) + _strings(filesystem.get("write"), "permissions.filesystem.write")
        manifest.permissions.environment = _strings(
            perms.get("env_vars"), "permissions.env_vars"
        )

    if raw.get("resources") is not None:
        resources = _obj(raw["resources"], "resources")
        manifest.limits.max_cpu = _integer(
            resources.get("cpu_millicores"), "resources.cpu_millicores"
        )
        memory_mb = _integer(resources.get("memory_mb"), "resources.memory_mb")
        if memory_mb > 0:
            manifest.limits.max_memory = f"{memory_mb}M"
        timeout_seconds = _integer(
            resources.get("timeout_seconds"), "resources.timeout_seconds"
        )
        if timeout_seconds > 0:
            manifest.limits.timeout = f"{timeout_seconds}s"

    return manifest


# --- validation ----------------------------------------------------------


def validate(manifest: Manifest | None) -> Manifest:
    """Check required fields and formats; return the manifest unchanged."""
    if manifest is None:
        raise ManifestError("manifest cannot be None")

    if not manifest.schema_version:
        raise ManifestError("schema_version is required")

    package_id = manifest.package.id
    if not package_id:
        raise ManifestError("package.id is required")
    if not is_valid_package_id(package_id):
        raise ManifestError(
            f"package.id must be in format 'org/name', got: {package_id}"
        )
    if not manifest.package.version:
        raise ManifestError("package.version is required")

    # Hub manifests get their bundle details from the resolve response.
    if not manifest.hub_format:
        if not manifest.bundle.digest:
            raise ManifestError("bundle.digest is required")
        if not is_valid_digest(manifest.bundle.digest):
            raise ManifestError(
                "bundle.digest must be a valid SHA-256 digest (sha256:hex...)"
            )
        if manifest.bundle.size_bytes <= 0:
            raise ManifestError("bundle.size_bytes must be > 0")

    transport = manifest.transport
    if not transport.type:
        raise ManifestError("transport.type is required")
    if transport.type not in ("stdio", "http"):
        raise ManifestError(
            f"transport.type must be 'stdio' or 'http', got: {transport.type}"
        )
    if transport.type == "http" and transport.port <= 0:
        raise ManifestError("transport.port is required for http transport")

    if not manifest.entrypoints:
        raise ManifestError("at least one entrypoint is required")
    for pos, ep in enumerate(manifest.entrypoints):
        if not ep.os:
            raise ManifestError(f"entrypoints[{pos}].os is required")
        if not is_valid_os(ep.os):
            raise ManifestError(
                f"entrypoints[{pos}].os must be 'linux', 'darwin', or 'windows', "
                f"got: {ep.os}"
            )
        if not ep.arch:
            raise ManifestError(f"entrypoints[{pos}].arch is required")
        if not is_valid_arch(ep.arch):
            raise ManifestError(
                f"entrypoints[{pos}].arch must be 'amd64' or 'arm64', got: {ep.arch}"
            )
        if not ep.command:
            raise ManifestError(f"entrypoints[{pos}].command is required")

    return manifest


# --- entrypoint selection ------------------------------------------------


def current_platform() -> tuple[str, str]:
    """Return the running (os, arch) pair using manifest naming."""
    name = sys.platform
    if name.startswith("linux"):
        os_name = "linux"
    elif name == "darwin":
        os_name = "darwin"
    elif name.startswith(("win", "cygwin", "msys")):
        os_name = "windows"
    else:
        os_name = re.sub(r"\d+$", "", name)

    machine = platform.machine().lower()
    arch = _MACHINE_TO_ARCH.get(machine, machine)
    return os_name, arch


def select_entrypoint(manifest: Manifest | None) -> Entrypoint:
    """Pick the entrypoint for the running OS and architecture."""
    if manifest is None:
        raise ManifestError("manifest cannot be None")

    os_name, arch = current_platform()
    for ep in manifest.entrypoints:
        if ep.os == os_name and ep.arch == arch:
            return ep

    # Hub manifests describe the platform loosely; a lone entrypoint is
    # usually a script that runs anywhere.
    if manifest.hub_format and len(manifest.entrypoints) == 1:
        return manifest.entrypoints[0]

    raise ManifestError(f"no entrypoint found for {os_name}/{arch}")


def is_system_command(command: str) -> bool:
    """True when the command names a system interpreter rather than a bundled file."""
    return command in SYSTEM_COMMANDS


def is_valid_package_id(package_id: str) -> bool:
    parts = package_id.split("/")
    return len(parts) == 2 and all(_PACKAGE_PART.fullmatch(part) for part in parts)


def is_valid_digest(digest: str) -> bool:
    return _DIGEST.fullmatch(digest) is not None


def is_valid_os(os_name: str) -> bool:
    return os_name in VALID_OS


def is_valid_arch(arch: str) -> bool:
    return arch in VALID_ARCH