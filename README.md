# buildrig

`buildrig` is a library for managing build drivers of BuildKit-style builders.
It also resolves build options, renders Kubernetes manifests for a build
daemon and keeps local build state on disk. It has no dependencies outside the
standard library.

## What is in the package

- **`buildrig.driver`**: the `Driver` and `Factory` base classes, `Status`,
  `Feature`, `Info` and `InitConfig`, and the errors `DriverError`,
  `DriverNotRunning` and `DriverNotConnecting`.
  - A `Registry` holds factories by name. `get_default_factory` picks the
    eligible factory with the lowest priority. `get_factory` looks one up by
    name. `get_factories` lists them sorted by name. `get_driver` builds an
    `InitConfig` and returns a `DriverHandle`.
  - Module-level `register`, `get_default_factory`, `get_factory`,
    `get_factories` and `get_driver` work on one shared registry. It starts
    empty, so factories must be registered before use.
  - `DriverHandle` wraps a driver. It calls the driver's `client()` and
    `features()` only once and caches the result. A client error is cached and
    raised again on each call.
  - `boot(handle, logger)` bootstraps the driver if it is not running and then
    returns its client. It gives up with `DriverError` after repeated failed
    attempts.
- **`buildrig.endpoint`**: `validate_endpoint` raises `ValueError` unless the
  URL scheme is `tcp`, `unix`, `ssh`, `docker-container` or `kube-pod`.
  `is_valid_endpoint` returns the same check as a bool.
- **`buildrig.remote_driver`**: `RemoteFactory` and `RemoteDriver` connect to
  an already running daemon.
  - The `servername`, `cacert`, `cert` and `key` options turn on TLS, described
    by `TLSOptions`. Certificate paths must be absolute.
  - When TLS is on and no server name is given, the server name is taken from
    the endpoint host.
- **`buildrig.semver`**: `parse_version` and `parse_constraint` produce
  `Version` and `Constraint` objects.
  - Constraints support comparison operators, `~`, `^`, `x`/`*` wildcards,
    comma-separated terms, `||` alternatives and hyphen ranges.
  - A pre-release version only satisfies terms that name a pre-release.
- **`buildrig.docker_driver`**: `DockerFactory` and `DockerDriver` use the
  Docker engine's built-in builder. `resolve_buildkit_version` maps an engine
  version to the builder version bundled with it, or `""` if none is known.
- **`buildrig.container_driver`**: `ContainerFactory` and `ContainerDriver` run
  the builder in a dedicated container through a Docker API object. The module
  docstring lists the methods that object must provide.
  - Driver options are `network`, `image`, `cgroup-parent` and `env.<NAME>`.
  - `write_config_files` lays out config files under `etc/buildkit` in a
    temporary directory.
- **`buildrig.manifest`**: `DeploymentOpt`, `QemuOpt`, `Toleration` and
  `ConfigGroup`.
  - `new_deployment` returns the deployment and its config maps as plain
    dictionaries.
  - `split_config_files` groups config files by directory.
  - `parse_quantity` parses resource quantities such as `100m` or `64Mi`.
- **`buildrig.kubernetes_driver`**: `KubernetesFactory` and
  `deployment_name_from_builder`.
  - `process_driver_opts` turns driver options into a `DeploymentOpt`, a
    load-balancing mode (`sticky` or `random`) and a namespace.
  - The supported options are `image`, `namespace`, `replicas`, `requests.cpu`,
    `requests.memory`, `limits.cpu`, `limits.memory`, `rootless`,
    `serviceaccount`, `nodeselector`, `tolerations`, `loadbalance`,
    `qemu.install` and `qemu.image`.
- **`buildrig.buildopts`**: the `BuildOptions` dataclasses and their helpers.
  - `resolve_option_paths` returns a copy of the options with every local path
    made absolute.
  - `create_exports` validates exporters and opens their output files or
    directories, returning `ClientExportEntry` objects.
  - `create_caches` and `create_attestations` prepare cache and attestation
    settings.
  - `is_remote_url` tells URL and Git references apart from local paths.
- **`buildrig.errdefs`**: `BuildError` ties an error to a build reference.
  `wrap_build(err, ref)` wraps an error, and returns `None` when given `None`.
- **`buildrig.localstate`**: `LocalState` stores a `State` per builder, node and
  reference as JSON under `<root>/refs/`. Writes are atomic.
- **`buildrig.serverconfig`**: helpers for a build server's files.
  - `ServerConfig` holds the settings and `load_config` reads them from a TOML
    file.
  - `prepare_root_dir` creates the server root and its `shared` directory.
  - `root_data_dir` and `log_file_path` work out where things go.

## What it does not do

The package does not contain a client for the build daemon's protocol, a Docker
engine client or a Kubernetes API client. Drivers take these as callables:

- `RemoteFactory(connect=...)`, `DockerFactory(connect=...)` and
  `ContainerFactory(connect=...)` take a connector. Without one, a driver's
  `client()` raises `DriverNotConnecting`.
- `KubernetesFactory(build_driver=...)` takes a builder for the cluster-side
  driver. Without one, `new` raises `DriverError` once the deployment has been
  prepared.

There is no command-line tool and no build server. `buildrig.serverconfig`
only handles the server's configuration and directories.

## Installation

```
pip install buildrig
```

## Examples

Map an engine version to its bundled builder version:

```python
from buildrig.docker_driver import resolve_buildkit_version

resolve_buildkit_version("20.10.16")   # "v0.8.2+bc07b2b8"
```

Check a version against a constraint:

```python
from buildrig.semver import parse_constraint, parse_version

parse_constraint(">= 23.0.2-0, < 23.0.4-0").check(parse_version("23.0.3"))  # True
```

Process Kubernetes driver options:

```python
from buildrig.driver import InitConfig
from buildrig.kubernetes_driver import KubernetesFactory, deployment_name_from_builder

cfg = InitConfig(name="buildx_buildkit_demo0", driver_opts={"replicas": "2"})
opt, loadbalance, namespace = KubernetesFactory().process_driver_opts(
    deployment_name_from_builder(cfg.name), "default", cfg
)
opt.replicas      # 2
loadbalance       # "sticky"
namespace         # "default"
```

Register a factory and pick the default driver:

```python
from buildrig.driver import Registry
from buildrig.remote_driver import RemoteFactory

registry = Registry()
registry.register(RemoteFactory())
registry.get_default_factory("tcp://localhost:1234", None, False).name   # "remote"
```

Save and read a build reference:

```python
from buildrig.localstate import LocalState, State

state = LocalState("/tmp/buildrig-state")
state.save_ref("builder", "node0", "ref1", State(local_path="/src", dockerfile_path="/src/Dockerfile"))
state.read_ref("builder", "node0", "ref1").local_path   # "/src"
```

Resolve relative paths in build options:

```python
from buildrig.buildopts import BuildOptions, resolve_option_paths

opts = resolve_option_paths(BuildOptions(context_path="."))
opts.context_path   # absolute path of the current directory
```

## Errors

Failures raise exceptions:

- Driver and registry problems raise `DriverError` or one of its subclasses,
  `DriverNotRunning` and `DriverNotConnecting`.
- Invalid input raises `ValueError`. This covers bad versions and constraints,
  bad quantities, bad export entries, empty names in `LocalState` and malformed
  server configs.
- File access problems raise `OSError`.

## Running the tests

```
pip install buildrig[test]
pytest
```