"""
The arcanum configuration of a project, as produced by 'nix eval --json .#lib.arcanum'.

Scopes are grouped by dimension. Each dimension nests its scopes to a fixed depth:

\b
    flake        a single scope for the whole project
    nixos        {configuration: scope}
    homeManager  {configuration: {user: scope}}
    devShells    {system: {shell: scope}}
"""

import json
import logging
import pathlib
import typing

import attr

from .utils import ConfigError

log = logging.getLogger(__name__)

Provenance = typing.Tuple[str, ...]


def _expect(value, kind, where: str, name: str):
    if not isinstance(value, kind):
        raise ConfigError(
            f"Expected {name} at {where}, found {type(value).__name__}")
    return value


def _strings(value, where: str) -> typing.FrozenSet[str]:
    _expect(value, list, where, "a list of recipients")
    return frozenset(_expect(v, str, where, "a recipient string") for v in value)


@attr.s(frozen=True, kw_only=True)
class FileEntry:
    source: pathlib.PurePath = attr.ib(converter=pathlib.PurePath)
    dest: str = attr.ib(default='')
    directory_permissions: str = attr.ib(default='')
    make_directory: bool = attr.ib(default=False)
    permissions: str = attr.ib(default='')
    owner: str = attr.ib(default='')
    group: str = attr.ib(default='')
    recipients: typing.FrozenSet[str] = attr.ib(factory=frozenset, converter=frozenset)

    @classmethod
    def from_json(cls, data, where: str) -> 'FileEntry':
        _expect(data, dict, where, "a file")
        if 'source' not in data:
            raise ConfigError(f"Missing 'source' at {where}")

        return cls(
            source=_expect(data['source'], str, f"{where}.source", "a path"),
            dest=_expect(data.get('dest', ''), str, f"{where}.dest", "a path"),
            directory_permissions=_expect(
                data.get('directoryPermissions', ''), str,
                f"{where}.directoryPermissions", "a string"),
            make_directory=_expect(
                data.get('makeDirectory', False), bool,
                f"{where}.makeDirectory", "a boolean"),
            permissions=_expect(
                data.get('permissions', ''), str, f"{where}.permissions", "a string"),
            owner=_expect(data.get('owner', ''), str, f"{where}.owner", "a string"),
            group=_expect(data.get('group', ''), str, f"{where}.group", "a string"),
            recipients=_strings(data.get('recipients', []), f"{where}.recipients"))


@attr.s(frozen=True, kw_only=True)
class Scope:
    files: typing.Mapping[str, FileEntry] = attr.ib(factory=dict)
    admin_recipients: typing.FrozenSet[str] = attr.ib(factory=frozenset, converter=frozenset)

    @classmethod
    def from_json(cls, data, where: str) -> 'Scope':
        _expect(data, dict, where, "a scope")
        files = _expect(data.get('files', {}), dict, f"{where}.files", "a mapping of files")
        return cls(
            files={name: FileEntry.from_json(entry, f"{where}.files.{name}")
                   for name, entry in files.items()},
            admin_recipients=_strings(
                data.get('adminRecipients', []), f"{where}.adminRecipients"))


@attr.s(frozen=True)
class BaseDimension:
    name: str = attr.ib()
    scope: Scope = attr.ib()


@attr.s(frozen=True)
class TargetDimension:
    name: str = attr.ib()
    scopes: typing.Mapping[str, Scope] = attr.ib()


@attr.s(frozen=True)
class TargetIdentityDimension:
    name: str = attr.ib()
    scopes: typing.Mapping[str, typing.Mapping[str, Scope]] = attr.ib()


Dimension = typing.Union[BaseDimension, TargetDimension, TargetIdentityDimension]


@attr.s(frozen=True, kw_only=True)
class ConfigTree:
    """
    The configuration for every scope of a project.

    A dimension that is None does not apply to the project, which is
    different from a dimension with no scopes in it.
    """
    flake: typing.Optional[Scope] = attr.ib(default=None)
    nixos: typing.Optional[typing.Mapping[str, Scope]] = attr.ib(default=None)
    home_manager: typing.Optional[
        typing.Mapping[str, typing.Mapping[str, Scope]]] = attr.ib(default=None)
    dev_shells: typing.Optional[
        typing.Mapping[str, typing.Mapping[str, Scope]]] = attr.ib(default=None)

    def dimensions(self) -> typing.Iterator[Dimension]:
        if self.flake is not None:
            yield BaseDimension('flake', self.flake)
        if self.nixos is not None:
            yield TargetDimension('nixos', self.nixos)
        if self.home_manager is not None:
            yield TargetIdentityDimension('homeManager', self.home_manager)
        if self.dev_shells is not None:
            yield TargetIdentityDimension('devShells', self.dev_shells)

    def scopes(self) -> typing.Iterator[typing.Tuple[Provenance, Scope]]:
        for dimension in self.dimensions():
            if isinstance(dimension, BaseDimension):
                yield (dimension.name,), dimension.scope
            elif isinstance(dimension, TargetDimension):
                for target, scope in dimension.scopes.items():
                    yield (dimension.name, target), scope
            elif isinstance(dimension, TargetIdentityDimension):
                for target, identities in dimension.scopes.items():
                    for identity, scope in identities.items():
                        yield (dimension.name, target, identity), scope
            else:
                raise TypeError(f"Unknown dimension {dimension!r}")

    def entries(self) -> typing.Iterator[typing.Tuple[Provenance, str, FileEntry]]:
        for provenance, scope in self.scopes():
            for name, entry in scope.files.items():
                yield provenance, name, entry

    def sources(self) -> typing.Sequence[pathlib.PurePath]:
        """Every distinct encrypted file declared by the project."""
        return tuple(sorted({entry.source for _, _, entry in self.entries()}))

    @classmethod
    def from_json(cls, data) -> 'ConfigTree':
        _expect(data, dict, "the top level", "an object")

        def optional(key, decode):
            value = data.get(key)
            return None if value is None else decode(value, key)

        return cls(
            flake=optional('flake', Scope.from_json),
            nixos=optional('nixos', _targets),
            home_manager=optional('homeManager', _target_identities),
            dev_shells=optional('devShells', _target_identities))

    @classmethod
    def loads(cls, text: typing.Union[str, bytes]) -> 'ConfigTree':
        try:
            data = json.loads(text)
        except ValueError as error:
            raise ConfigError(f"Configuration is not valid JSON: {error}") from error
        return cls.from_json(data)


def _targets(data, where: str) -> typing.Dict[str, Scope]:
    _expect(data, dict, where, "a mapping of scopes")
    return {target: Scope.from_json(scope, f"{where}.{target}")
            for target, scope in data.items()}


def _target_identities(data, where: str) -> typing.Dict[str, typing.Dict[str, Scope]]:
    _expect(data, dict, where, "a mapping of scopes")
    return {target: _targets(scopes, f"{where}.{target}")
            for target, scopes in data.items()}
