# limacfg

`limacfg` reads, completes and checks the YAML configuration of a Linux
virtual machine instance. It also reads the host-side network configuration
(`networks.yaml`), builds the command lines for the network daemons, and
generates the matching sudoers rules.

## Installation

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Instance configuration

`limacfg.load.load(data, file_path, default_path, override_path)` parses an
instance document and mixes in an optional default file and an optional
override file. Either path may be `None`, and a path that does not exist is
skipped. Unset fields are then filled in. The result is not validated.

```python
from limacfg.load import load
from limacfg.validate import validate

with open("lima.yaml", "rb") as fh:
    cfg = load(fh.read(), "/path/to/instance/lima.yaml", None, None)

validate(cfg, True)
print(cfg.cpus, cfg.memory, cfg.disk)
```

A document with repeated keys, or with values of the wrong type, raises
`limacfg.load.LoadError`. Unknown fields are logged as a warning and
ignored.

Priority runs override file, then the instance file, then the default file:

* single values take the highest-priority setting, then a built-in default
  (for example 4 CPUs, `4GiB` memory, `100GiB` disk, `reverse-sshfs` mounts);
* maps such as `env` and `hostResolver.hosts` are merged;
* lists such as `provision`, `probes`, `portForwards` and `copyToHost` are
  concatenated, highest priority first, so the first matching port-forward
  rule wins;
* `mounts` are combined by location and `networks` by interface name;
* `dns` is taken whole from the highest priority that sets it;
* CA certificate files and certs are appended without duplicates.

`limacfg.defaults.fill_default(y, d, o, file_path)` does this merge on
`LimaYAML` objects directly and changes `y` in place. Port-forward sockets
and copy-to-host paths may use `{{.Home}}`, `{{.UID}}`, `{{.User}}`, and on
the host side also `{{.Dir}}` and `{{.Name}}`. Networks without a MAC address
get one from `limacfg.defaults.mac_address`, which is stable for a host and
file.

`limacfg.validate.validate(y, warn)` raises
`limacfg.validate.ValidationError` (a `ValueError`) with a message naming
the offending field. With `warn` set, experimental settings such as
`mountType: 9p` or `vmType: vz` are logged. `limacfg.validate.ram_in_bytes`
parses sizes such as `"4GiB"`.

The dataclasses in `limacfg.limayaml` (`LimaYAML`, `Mount`, `PortForward`,
`Network` and the rest) describe the document. `LimaYAML.from_dict` and
`LimaYAML.to_dict` convert between them and plain dictionaries using the
YAML field names.

## Host networks

```python
from limacfg.networks import load_config
from limacfg.sudoers import sudoers

config = load_config("/path/to/_config/networks.yaml")
config.check("shared")
print(config.start_cmd("shared", "socket_vmnet"))
print(sudoers(config))
```

`NetworksConfig` parses `networks.yaml` strictly (unknown fields raise
`limacfg.networks.NetworksError`) and gives the socket, PID file, log file,
start and stop commands for each network daemon. `start_cmd` raises
`RuntimeError` when the daemon is not installed.

`limacfg.sudoers.verify_sudo_access(config, sudoers_file)` checks that an
existing sudoers file matches the generated rules, or, when there is no
file, that `sudo` works without a password.

`limacfg.netvalidate.validate_networks_config` checks that the paths in
`networks.yaml` and their parent directories are owned by administrators
and not writable by others. It works on macOS only and raises
`NetworksError` elsewhere.

## Host helpers

* `limacfg.users.lima_user` gives the user name, uid, gid and home used in
  the guest; `lookup_user` and `lookup_group` look up host accounts.
* `limacfg.machineid.machine_id` gives a stable identifier for this host.
* `limacfg.hostinfo` gives `unix_path_max`, file ownership (`sys_stat`),
  `sys_kill`, and DNS servers and proxy variables from network service data.
* `limacfg.localpath.expand` expands `~` and `~/...` paths.
* `limacfg.lockutil.dir_lock` is a context manager holding an exclusive lock
  on a directory.
* `limacfg.logprop.propagate_json` forwards JSON log lines to a
  `logging.Logger`.

## What this package does not do

There is no command-line tool, and nothing here creates, starts or stops
virtual machines. The network daemon commands are built as strings but are
not run, and the default and override files are not looked up
automatically: their paths have to be passed to `load`.