"""Reading an instance configuration and mixing in the user's defaults and overrides."""

from __future__ import annotations

import json
import logging
import os

import yaml

from limacfg.defaults import fill_default
from limacfg.limayaml import LimaYAML, LimaYAMLError

log = logging.getLogger(__name__)


class LoadError(ValueError):
    """A configuration document cannot be parsed."""


class _UniqueKeyLoader(yaml.SafeLoader):
    """A safe loader that refuses mappings with repeated keys."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _parse(data: str | bytes, comment: str) -> LimaYAML:
    try:
        document = yaml.load(data, Loader=_UniqueKeyLoader)
        return LimaYAML.from_dict(document)
    except (yaml.YAMLError, LimaYAMLError) as exc:
        raise LoadError(f"failed to unmarshal YAML ({comment}): {exc}") from exc


def _read_optional(path: str | os.PathLike | None) -> bytes | None:
    if path is None:
        return None
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except FileNotFoundError:
        return None


def load(
    data: str | bytes,
    file_path: str | os.PathLike,
    default_path: str | os.PathLike | None = None,
    override_path: str | os.PathLike | None = None,
) -> LimaYAML:
    """Parse a configuration and fill unset fields with defaults.

    Missing default and override files are skipped. The result is not validated.
    """
    file_path = os.fspath(file_path)
    y = _parse(data, f"main file {json.dumps(file_path)}")

    layers = []
    for kind, path in (("default", default_path), ("override", override_path)):
        content = _read_optional(path)
        if content is None:
            layers.append(LimaYAML())
            continue
        shown = json.dumps(os.fspath(path))
        log.debug("Mixing %s into %s", shown, json.dumps(file_path))
        layers.append(_parse(content, f"{kind} file {shown}"))

    d, o = layers
    fill_default(y, d, o, file_path)
    return y