import sys
from unittest import mock

import pytest

from mcpclient.manifest import (
    BundleInfo,
    Entrypoint,
    Manifest,
    ManifestError,
    PackageInfo,
    PermissionsInfo,
    TransportInfo,
    current_platform,
    is_system_command,
    is_valid_arch,
    is_valid_digest,
    is_valid_os,
    is_valid_package_id,
    parse,
    select_entrypoint,
    validate,
)

ZERO_DIGEST = "sha256:" + "0" * 64

VALID_MANIFEST_JSON = b"""{
  "schema_version": "1.0",
  "package": {
    "id": "acme/test-package",
    "version": "1.0.0",
    "git_sha": "abc123def456"
  },
  "bundle": {
    "digest": "sha256:abcd1234abcd1234abcd1234abcd1234abcd1234abcd1234abcd1234abcd1234",
    "size_bytes": 1048576
  },
  "transport": {
    "type": "stdio"
  },
  "entrypoints": [
    {
      "os": "linux",
      "arch": "amd64",
      "command": "./bin/server",
      "args": ["--mode", "stdio"]
    }
  ],
  "permissions_requested": {
    "network": ["*.example.com"],
    "environment": ["HOME", "USER"],
    "subprocess": false
  },
  "limits_recommended": {
    "max_cpu": 1000,
    "max_memory": "512M",
    "max_pids": 10,
    "max_fds": 100,
    "timeout": "5m"
  }
}"""


def _platform(os_value, machine):
    class _Ctx:
        def __enter__(self):
            self._p1 = mock.patch.object(sys, "platform", os_value)
            self._p2 = mock.patch("platform.machine", return_value=machine)
            self._p1.start()
            self._p2.start()

        def __exit__(self, *exc):
            self._p2.stop()
            self._p1.stop()

    return _Ctx()


def _base_manifest(**overrides):
    manifest = Manifest(
        schema_version="1.0",
        package=PackageInfo(id="acme/hello", version="1.0.0"),
        bundle=BundleInfo(digest=ZERO_DIGEST, size_bytes=1024),
        transport=TransportInfo(type="stdio"),
        entrypoints=[Entrypoint(os="linux", arch="amd64", command="./bin/server")],
    )
    for key, value in overrides.items():
        setattr(manifest, key, value)
    return manifest


def test_parse_valid_manifest():
    data = b"""{
        "schema_version": "1.0",
        "package": {"id": "acme/hello", "version": "1.0.0", "git_sha": "abc123"},
        "bundle": {"digest": "%s", "size_bytes": 1024},
        "transport": {"type": "stdio"},
        "entrypoints": [{"os": "linux", "arch": "amd64", "command": "./bin/server"}],
        "permissions_requested": {},
        "limits_recommended": {}
    }""" % ZERO_DIGEST.encode()
    m = parse(data)
    assert m.package.id == "acme/hello"
    assert m.package.version == "1.0.0"
    assert m.package.git_sha == "abc123"
    assert m.transport.type == "stdio"
    assert len(m.entrypoints) == 1
    assert m.hub_format is False


def test_parse_empty_data():
    with pytest.raises(ManifestError, match="cannot be empty"):
        parse(b"")


def test_parse_invalid_json():
    with pytest.raises(ManifestError, match="failed to parse manifest JSON"):
        parse(b"{invalid json}")


def test_parse_accepts_str():
    m = parse('{"schema_version": "2.0", "package": {"id": "a/b"}}')
    assert m.schema_version == "2.0"
    assert m.package.id == "a/b"


@pytest.mark.parametrize(
    ("literal", "expected"), [("1", "1"), ("1.0", "1.0"), ("2.5", "2.5")]
)
def test_parse_numeric_schema_version(literal, expected):
    m = parse('{"schema_version": %s, "package": {"id": "acme/x"}}' % literal)
    assert m.schema_version == expected
    assert m.package.id == "acme/x"


def test_parse_bench_manifest_fields():
    m = parse(VALID_MANIFEST_JSON)
    assert m.entrypoints[0].args == ["--mode", "stdio"]
    assert m.permissions.network == ["*.example.com"]
    assert m.permissions.environment == ["HOME", "USER"]
    assert m.permissions.subprocess is False
    assert m.limits.max_cpu == 1000
    assert m.limits.max_memory == "512M"
    assert m.limits.max_pids == 10
    assert m.limits.max_fds == 100
    assert m.limits.timeout == "5m"
    assert m.bundle.size_bytes == 1048576


def test_full_manifest_workflow():
    m = parse(VALID_MANIFEST_JSON)
    assert validate(m) is m
    with _platform("linux", "x86_64"):
        assert select_entrypoint(m).command == "./bin/server"


def test_fuzz_seed_valid_manifest_validates():
    data = (
        b'{"schema_version": "1.0",'
        b'"package": {"id": "org/name", "version": "1.0.0", "git_sha": "abc123"},'
        b'"bundle": {"digest": "sha256:abcd1234abcd1234abcd1234abcd1234abcd1234abcd1234abcd1234abcd1234", "size_bytes": 1000},'
        b'"transport": {"type": "stdio"},'
        b'"entrypoints": [{"os": "linux", "arch": "amd64", "command": "./bin/server"}]}'
    )
    m = parse(data)
    assert validate(m).package.id == "org/name"


def test_fuzz_seed_schema_only():
    m = parse(b'{"schema_version": "1.0"}')
    assert m.schema_version == "1.0"
    with pytest.raises(ManifestError, match="package.id is required"):
        validate(m)


def test_fuzz_seed_empty_object():
    m = parse(b"{}")
    assert m == Manifest()
    with pytest.raises(ManifestError, match="schema_version is required"):
        validate(m)


def test_fuzz_seed_null_is_empty_manifest():
    assert parse(b"null") == Manifest()


@pytest.mark.parametrize("data", [b"[]", b'"string"', b"123"])
def test_fuzz_seed_non_object_rejected(data):
    with pytest.raises(ManifestError):
        parse(data)


@pytest.mark.parametrize(
    "data",
    [
        b"\xff\xfe\x00",
        b'{"package": ',
        b'{"entrypoints": "x"}',
        b'{"package": {"id": 5}}',
        b'{"bundle": {"size_bytes": 1.5}}',
        b'{"schema_version": true}',
        b'{"permissions_requested": {"subprocess": "yes"}}',
        b'{"entrypoints": [{"args": [1, 2]}]}',
    ],
)
def test_malformed_input_raises_manifest_error(data):
    with pytest.raises(ManifestError):
        parse(data)


def test_fuzz_select_seed():
    m = parse(
        b'{"entrypoints": ['
        b'{"os": "linux", "arch": "amd64", "command": "./server"},'
        b'{"os": "darwin", "arch": "arm64", "command": "./server-mac"},'
        b'{"os": "windows", "arch": "amd64", "command": "./server.exe"}]}'
    )
    with _platform("linux", "x86_64"):
        assert select_entrypoint(m).command == "./server"
    with _platform("darwin", "arm64"):
        assert select_entrypoint(m).command == "./server-mac"
    with _platform("win32", "AMD64"):
        assert select_entrypoint(m).command == "./server.exe"


def test_validate_valid_manifest():
    m = _base_manifest()
    m.package.git_sha = "abc123"
    assert validate(m) is m


def test_validate_none():
    with pytest.raises(ManifestError):
        validate(None)


def test_validate_missing_schema_version():
    m = Manifest(package=PackageInfo(id="acme/hello", version="1.0.0"))
    with pytest.raises(ManifestError, match="schema_version"):
        validate(m)


def test_validate_invalid_package_id():
    m = Manifest(schema_version="1.0", package=PackageInfo(id="invalid", version="1.0.0"))
    with pytest.raises(ManifestError, match="org/name"):
        validate(m)


def test_validate_missing_version():
    m = Manifest(schema_version="1.0", package=PackageInfo(id="acme/hello"))
    with pytest.raises(ManifestError, match="package.version is required"):
        validate(m)


def test_validate_invalid_digest():
    m = Manifest(
        schema_version="1.0",
        package=PackageInfo(id="acme/hello", version="1.0.0"),
        bundle=BundleInfo(digest="invalid", size_bytes=1024),
    )
    with pytest.raises(ManifestError, match="digest"):
        validate(m)


def test_validate_bundle_size():
    m = _base_manifest(bundle=BundleInfo(digest=ZERO_DIGEST, size_bytes=0))
    with pytest.raises(ManifestError, match="size_bytes must be > 0"):
        validate(m)


def test_validate_invalid_transport_type():
    m = _base_manifest(transport=TransportInfo(type="invalid"))
    with pytest.raises(ManifestError, match="transport"):
        validate(m)


def test_validate_http_transport_without_port():
    m = _base_manifest(transport=TransportInfo(type="http", port=0))
    with pytest.raises(ManifestError, match="port"):
        validate(m)


def test_validate_no_entrypoints():
    m = _base_manifest(entrypoints=[])
    with pytest.raises(ManifestError, match="entrypoint"):
        validate(m)


def test_validate_invalid_entrypoint_os():
    m = _base_manifest(
        entrypoints=[Entrypoint(os="invalid", arch="amd64", command="./bin/server")]
    )
    with pytest.raises(ManifestError, match="os"):
        validate(m)


def test_validate_invalid_entrypoint_arch():
    m = _base_manifest(
        entrypoints=[Entrypoint(os="linux", arch="invalid", command="./bin/server")]
    )
    with pytest.raises(ManifestError, match="arch"):
        validate(m)


def test_validate_missing_command():
    m = _base_manifest(entrypoints=[Entrypoint(os="linux", arch="amd64")])
    with pytest.raises(ManifestError, match=r"entrypoints\[0\].command is required"):
        validate(m)


FIVE_ENTRYPOINTS = [
    Entrypoint(os="linux", arch="amd64", command="./bin/linux"),
    Entrypoint(os="linux", arch="arm64", command="./bin/linux-arm"),
    Entrypoint(os="darwin", arch="amd64", command="./bin/darwin"),
    Entrypoint(os="darwin", arch="arm64", command="./bin/darwin-arm"),
    Entrypoint(os="windows", arch="amd64", command="./bin/windows.exe"),
]


def test_select_entrypoint_found_for_current_os():
    os_name, arch = current_platform()
    here = Entrypoint(os=os_name, arch=arch, command="./bin/here")
    m = Manifest(entrypoints=[Entrypoint(os="plan9", arch="mips", command="x"), here])
    assert select_entrypoint(m) is here


@pytest.mark.parametrize(
    ("os_value", "machine", "command"),
    [
        ("linux", "x86_64", "./bin/linux"),
        ("linux", "aarch64", "./bin/linux-arm"),
        ("darwin", "x86_64", "./bin/darwin"),
        ("darwin", "arm64", "./bin/darwin-arm"),
        ("win32", "AMD64", "./bin/windows.exe"),
    ],
)
def test_select_entrypoint_by_platform(os_value, machine, command):
    m = Manifest(entrypoints=list(FIVE_ENTRYPOINTS))
    with _platform(os_value, machine):
        assert select_entrypoint(m).command == command


def test_select_entrypoint_not_found():
    m = Manifest(entrypoints=[Entrypoint(os="freebsd", arch="amd64", command="./bin/freebsd")])
    with pytest.raises(ManifestError, match="no entrypoint found"):
        select_entrypoint(m)


def test_select_entrypoint_none():
    with pytest.raises(ManifestError):
        select_entrypoint(None)


def test_current_platform_mapping():
    with _platform("linux", "aarch64"):
        assert current_platform() == ("linux", "arm64")
    with _platform("freebsd13", "i686"):
        assert current_platform() == ("freebsd", "386")


@pytest.mark.parametrize(
    ("package_id", "valid"),
    [
        ("acme/hello", True),
        ("org-123/pkg_name", True),
        ("org/pkg", True),
        ("org", False),
        ("org/", False),
        ("/name", False),
        ("org/name/extra", False),
        ("", False),
    ],
)
def test_is_valid_package_id(package_id, valid):
    assert is_valid_package_id(package_id) is valid


@pytest.mark.parametrize(
    ("digest", "valid"),
    [
        (ZERO_DIGEST, True),
        ("sha256:abc123def456", False),
        ("sha1:abc123", False),
        ("invalid", False),
        ("", False),
        (ZERO_DIGEST + "\n", False),
    ],
)
def test_is_valid_digest(digest, valid):
    assert is_valid_digest(digest) is valid


@pytest.mark.parametrize(
    ("os_name", "valid"),
    [("linux", True), ("darwin", True), ("windows", True), ("invalid", False), ("", False)],
)
def test_is_valid_os(os_name, valid):
    assert is_valid_os(os_name) is valid


@pytest.mark.parametrize(
    ("arch", "valid"),
    [("amd64", True), ("arm64", True), ("386", False), ("invalid", False), ("", False)],
)
def test_is_valid_arch(arch, valid):
    assert is_valid_arch(arch) is valid


@pytest.mark.parametrize(
    ("command", "expected"),
    [("node", True), ("python3", True), ("uvx", True), ("./bin/server", False), ("bash", False)],
)
def test_is_system_command(command, expected):
    assert is_system_command(command) is expected


HUB_JSON = b"""{
  "schema_version": 1,
  "package": {"id": "acme/weather", "version": "0.2.0", "git_sha": "deadbeef"},
  "runtime": {"type": "node", "platform": {"os": "darwin", "arch": "arm64"}},
  "entrypoint": {"command": ["node", "dist/index.js"], "args": ["--stdio"]},
  "permissions": {
    "network": {"outbound": ["api.example.com"], "inbound": false},
    "filesystem": {"read": ["/data"], "write": ["/tmp/out"]},
    "env_vars": ["API_HOST"]
  },
  "resources": {"memory_mb": 256, "cpu_millicores": 500, "timeout_seconds": 30}
}"""


def test_parse_hub_manifest_mapping():
    m = parse(HUB_JSON)
    assert m.hub_format is True
    assert m.schema_version == "1"
    assert m.package == PackageInfo(id="acme/weather", version="0.2.0", git_sha="deadbeef")
    assert m.transport == TransportInfo(type="stdio")
    assert m.entrypoints == [
        Entrypoint(os="darwin", arch="arm64", command="node", args=["dist/index.js", "--stdio"])
    ]
    assert m.permissions == PermissionsInfo(
        network=["api.example.com"],
        environment=["API_HOST"],
        subprocess=True,
        filesystem=["/data", "/tmp/out"],
    )
    assert m.limits.max_cpu == 500
    assert m.limits.max_memory == "256M"
    assert m.limits.timeout == "30s"


def test_parse_hub_manifest_defaults():
    m = parse(b'{"schema_version": "1.0", "runtime": {"type": "python"}, "entrypoint": {}}')
    assert m.entrypoints == [Entrypoint(os="linux", arch="amd64", command="", args=[])]
    assert m.permissions.subprocess is True
    assert m.limits.max_memory == ""
    assert m.limits.timeout == ""


def test_parse_hub_manifest_invalid_schema_string():
    with pytest.raises(ManifestError, match="failed to parse hub manifest"):
        parse(b'{"schema_version": "abc", "runtime": {}}')


def test_hub_manifest_skips_bundle_validation():
    m = parse(HUB_JSON)
    assert validate(m) is m


def test_hub_single_entrypoint_fallback():
    m = parse(HUB_JSON)
    with _platform("linux", "x86_64"):
        assert select_entrypoint(m).command == "node"


def test_non_hub_single_entrypoint_has_no_fallback():
    m = Manifest(entrypoints=[Entrypoint(os="darwin", arch="arm64", command="./x")])
    with _platform("linux", "x86_64"):
        with pytest.raises(ManifestError, match="linux/amd64"):
            select_entrypoint(m)