"""
Find the recipients a secret should be encrypted to.

A file can be referenced by any number of scopes. It is encrypted to the
union of the recipients declared for the file in each of those scopes and
the admin recipients of each scope.
"""

import logging
import pathlib
import typing

import attr

from .config import ConfigTree, Provenance
from .utils import ResolutionError

log = logging.getLogger(__name__)

RecipientSet = typing.Tuple[str, ...]

SSH_KEY_TYPES = ('ssh-ed25519', 'ssh-rsa')


class UnsupportedRecipient(ResolutionError):
    def __init__(self, identifier: str):
        super().__init__(f"Unsupported recipient {identifier!r}")
        self.identifier = identifier


@attr.s(frozen=True)
class PublicKeyRecipient:
    """An age X25519 public key ('age1...')."""
    key: str = attr.ib()

    def __str__(self):
        return self.key


@attr.s(frozen=True)
class SshRecipient:
    """An SSH public key ('ssh-ed25519 AAAA... comment')."""
    key: str = attr.ib()

    def __str__(self):
        return self.key


Recipient = typing.Union[PublicKeyRecipient, SshRecipient]


def parse_recipient(identifier: str) -> Recipient:
    if identifier.startswith('age1'):
        return PublicKeyRecipient(identifier)
    if identifier.split(' ', 1)[0] in SSH_KEY_TYPES:
        return SshRecipient(identifier)
    raise UnsupportedRecipient(identifier)


def parse_recipients(identifiers: typing.Iterable[str]) -> typing.List[Recipient]:
    return [parse_recipient(identifier) for identifier in identifiers]


@attr.s(frozen=True)
class Contribution:
    """The recipients one scope added for a file."""
    scope: Provenance = attr.ib()
    file_name: str = attr.ib()
    recipients: RecipientSet = attr.ib()

    @property
    def label(self) -> str:
        return '.'.join(self.scope)


@attr.s(frozen=True)
class Resolution:
    source: pathlib.PurePath = attr.ib()
    recipients: RecipientSet = attr.ib()
    provenance: typing.Tuple[Contribution, ...] = attr.ib(default=())

    def __bool__(self):
        return bool(self.recipients)

    def describe(self) -> typing.List[str]:
        if not self.recipients:
            return [f"No recipients for {self.source}"]
        lines = [f"Recipients for {self.source}:"]
        lines += [f" - {recipient}" for recipient in self.recipients]
        lines += [f"   from {c.label} ({c.file_name})" for c in self.provenance]
        return lines


def resolve(tree: ConfigTree, source: pathlib.PurePath) -> Resolution:
    source = pathlib.PurePath(source)
    recipients: typing.Set[str] = set()
    provenance: typing.List[Contribution] = []

    for scope_provenance, scope in tree.scopes():
        for name, entry in scope.files.items():
            if entry.source != source:
                continue
            contributed = entry.recipients | scope.admin_recipients
            recipients |= contributed
            provenance.append(Contribution(
                scope=scope_provenance,
                file_name=name,
                recipients=tuple(sorted(contributed))))

    return Resolution(
        source=source,
        recipients=tuple(sorted(recipients)),
        provenance=tuple(sorted(provenance, key=lambda c: (c.scope, c.file_name))))
