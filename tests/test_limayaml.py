import ipaddress
import logging

import pytest
import yaml

from limacfg.limayaml import (
    SSHFS,
    Image,
    Kernel,
    LimaYAML,
    LimaYAMLError,
    Network,
    Probe,
    Rosetta,
    Video,
)

CANONICAL = {
    "vmType": "qemu",
    "arch": "x86_64",
    "images": [
        {
            "location": "https://example.com/image.qcow2",
            "arch": "x86_64",
            "digest": "sha256:abc",
            "kernel": {"location": "/boot/vmlinuz", "arch": "x86_64", "cmdline": "console=ttyS0"},
            "initrd": {"location": "/boot/initrd"},
        }
    ],
    "cpuType": {"x86_64": "qemu64"},
    "cpus": 2,
    "memory": "2GiB",
    "disk": "50GiB",
    "additionalDisks": ["data"],
    "mounts": [
        {
            "location": "~",
            "mountPoint": "/mnt/home",
            "writable": True,
            "sshfs": {"cache": False},
            "9p": {"msize": "8KiB"},
        }
    ],
    "mountType": "9p",
    "ssh": {"localPort": 60022, "forwardAgent": False},
    "provision": [{"mode": "user", "script": "#!/bin/true"}],
    "probes": [{"mode": "readiness", "description": "d", "script": "#!/bin/false", "hint": "h"}],
    "portForwards": [
        {
            "guestIP": "127.0.0.1",
            "guestPort": 80,
            "guestPortRange": [80, 80],
            "hostPortRange": [8080, 8080],
            "proto": "tcp",
        }
    ],
    "copyToHost": [{"guest": "/etc/hosts", "host": "/tmp/hosts"}],
    "networks": [{"lima": "shared", "vzNAT": False, "switchPort": 65535, "interface": "lima0"}],
    "env": {"ONE": "Eins"},
    "dns": ["1.0.1.0"],
    "hostResolver": {"enabled": False, "hosts": {"MY.Host": "host.lima.internal"}},
    "propagateProxyEnv": False,
    "caCerts": {"files": ["ca.crt"]},
    "rosetta": {"enabled": True, "binfmt": None},
}


def test_from_dict_reads_nested_values():
    y = LimaYAML.from_dict(CANONICAL)
    image = y.images[0]
    assert isinstance(image, Image)
    assert isinstance(image.kernel, Kernel)
    assert image.kernel.cmdline == "console=ttyS0"
    assert image.initrd.location == "/boot/initrd"
    assert image.initrd.arch == ""
    assert y.mounts[0].nine_p.msize == "8KiB"
    assert y.mounts[0].sshfs == SSHFS(cache=False)
    assert y.port_forwards[0].guest_port_range == (80, 80)
    assert y.port_forwards[0].guest_ip == ipaddress.ip_address("127.0.0.1")
    assert y.port_forwards[0].host_ip is None
    assert y.dns == [ipaddress.ip_address("1.0.1.0")]
    assert y.networks[0].switch_port_deprecated == 65535


def test_round_trip_preserves_document():
    y = LimaYAML.from_dict(CANONICAL)
    assert y.to_dict() == CANONICAL
    assert LimaYAML.from_dict(y.to_dict()) == y


def test_empty_document_keeps_only_required_fields():
    assert LimaYAML().to_dict() == {"images": []}


def test_set_pointers_with_zero_values_are_kept():
    out = LimaYAML(cpus=0, propagate_proxy_env=False).to_dict()
    assert out["cpus"] == 0
    assert out["propagateProxyEnv"] is False


def test_rosetta_fields_are_never_omitted():
    out = LimaYAML(rosetta=Rosetta(enabled=True)).to_dict()
    assert out["rosetta"] == {"enabled": True, "binfmt": None}


def test_video_always_has_vnc():
    assert Video(display="none").to_dict() == {"display": "none", "vnc": {}}


def test_probe_fields_are_always_written():
    assert Probe(script="true").to_dict() == {
        "mode": "",
        "description": "",
        "script": "true",
        "hint": "",
    }


def test_null_values_mean_unset():
    assert LimaYAML.from_dict({"cpus": None, "ssh": None, "images": None}) == LimaYAML()
    assert LimaYAML.from_dict(None) == LimaYAML()


def test_parses_yaml_text():
    text = "mounts:\n- location: /tmp/lima\n  9p:\n    cache: mmap\n"
    y = LimaYAML.from_dict(yaml.safe_load(text))
    assert y.mounts[0].location == "/tmp/lima"
    assert y.mounts[0].nine_p.cache == "mmap"


def test_network_round_trip():
    nw = Network(vnl_deprecated="/tmp/vde.ctl", switch_port_deprecated=65535, interface="def0")
    assert Network.from_dict(nw.to_dict()) == nw


@pytest.mark.parametrize(
    "data",
    [
        {"cpus": "four"},
        {"cpus": True},
        {"dns": ["not-an-ip"]},
        {"portForwards": [{"guestPortRange": [1]}]},
        {"networks": [{"switchPort": 70000}]},
        {"images": {"location": "/x"}},
        {"ssh": ["localPort"]},
        {"propagateProxyEnv": "yes"},
        ["not", "a", "mapping"],
    ],
)
def test_invalid_values_raise(data):
    with pytest.raises(LimaYAMLError):
        LimaYAML.from_dict(data)


def test_unknown_fields_are_warned_and_ignored(caplog):
    with caplog.at_level(logging.WARNING, logger="limacfg.limayaml"):
        y = LimaYAML.from_dict({"cpus": 3, "bogus": 1, "ssh": {"extra": True}})
    assert y.cpus == 3
    assert "bogus" in caplog.text
    assert "ssh.extra" in caplog.text