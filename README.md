# mcpclient

A library for working with MCP server packages.

- **Manifests** (`mcpclient.manifest`): `parse` reads both the client manifest
  format and the hub format, which has `runtime` and a single `entrypoint`.
  `validate` checks required fields and formats. `select_entrypoint` picks the
  entrypoint for the running OS and architecture. For a hub manifest with a
  single entrypoint, it falls back to that entrypoint.
- **Configuration** (`mcpclient.config`): `load_config` starts from built-in
  defaults, then reads `~/.mcp/config.yaml` (or `config.yml`) if present, then
  applies `MCP_<KEY>` environment variables such as `MCP_REGISTRY_URL` or
  `MCP_LOG_LEVEL`. The result is a `Config` dataclass. It includes the mandatory
  `default_*` resource limits and a `PolicyConfig`. A leading `~` in
  `cache_dir` and `audit_log_file` is expanded.
- **Hub client** (`mcpclient.hub`): `HubClient` opens, uploads to and
  finalizes bundle upload sessions. It refuses plain HTTP except for
  localhost. It also refuses hosts that are, or resolve to, private, loopback
  or link-local addresses; a host that cannot be resolved counts as private.
- **Executor** (`mcpclient.executor`): `STDIOExecutor` runs a server's
  entrypoint as a child process that shares this process's stdin, stdout and
  stderr. Construction fails unless every field of `ExecutionLimits` is set.
- **Bundler** (`mcpclient.bundler`): `Bundler` builds reproducible `tar.gz`
  bundles. Entries are sorted by path and carry a fixed timestamp and fixed
  permissions. It follows `.mcpignore` glob rules and skips symlinks. The
  result reports a `sha256:` digest, sizes and counts.

Errors are raised as exceptions: `ManifestError`, `HubError`, `ExecutorError`
and `BundleError`.

## Installation

```
pip install .
```

## Usage

Parse and check a manifest:

```python
from pathlib import Path

from mcpclient.manifest import parse, validate, select_entrypoint

manifest = validate(parse(Path("manifest.json").read_bytes()))
entrypoint = select_entrypoint(manifest)
print(entrypoint.command, entrypoint.args)
```

Build a bundle:

```python
from mcpclient.bundler import Bundler

bundler = Bundler()
bundler.load_ignore_file("my-mcp/.mcpignore")   # a missing file adds no rules
bundler.add_ignore_pattern("*.log")
result = bundler.create("my-mcp", "bundle.tar.gz")
print(result.sha256, result.file_count, result.dir_count)
```

Upload it to a hub:

```python
from mcpclient.hub import HubClient, InitUploadRequest

with HubClient("https://hub.example.com", token="token") as client:
    init = client.init_upload(InitUploadRequest("acme/my-mcp", "1.0.0", result.sha256))
    client.upload_file(init.bundle_upload_url, "bundle.tar.gz",
                       lambda done, total: print(done, "/", total))
    print(client.finalize_upload(init.upload_id).status)
```

Run an entrypoint:

```python
from datetime import timedelta

from mcpclient.executor import ExecutionLimits, STDIOExecutor

limits = ExecutionLimits(max_cpu=1000, max_memory="512M", max_pids=32,
                         max_fds=256, timeout=timedelta(minutes=5))
executor = STDIOExecutor("/tmp/work", limits, env={"LOG_LEVEL": "debug"})
executor.execute(entrypoint, "/path/to/unpacked/bundle")
```

Load the configuration:

```python
from mcpclient.config import load_config

config = load_config()
print(config.registry_url, config.default_max_memory, config.policy.cert_level_mode)
```

## What it does not do

- There is no command-line tool. Everything is used as a library.
- `STDIOExecutor` requires CPU, memory, PID and file-descriptor limits and
  logs them. The only limit it enforces is the timeout: when the timeout
  expires, it kills the process. It applies no sandbox and no OS resource
  controls.
- There is no registry resolve, pull or cache. The hub client covers only
  the upload endpoints.

## Tests

```
pip install .[test]
pytest
```