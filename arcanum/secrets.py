import logging
import pathlib
import sys
import typing

import attr

from .age import Age, Identity, load_identities
from .config import ConfigTree
from .editor import Editor
from .recipients import Recipient, Resolution, parse_recipients, resolve
from .utils import (
    ArcanumException,
    AuthorizationError,
    NoRecipients,
    VerificationError,
    atomic_write,
    plaintext_suffix,
    private_workspace,
)

log = logging.getLogger(__name__)

STDIO = pathlib.Path('-')


class RekeyFailed(ArcanumException):
    def __init__(self, failed: typing.Sequence[pathlib.PurePath], total: int):
        super().__init__(
            f"Failed to rekey {len(failed)} of {total} files: "
            f"{', '.join(str(path) for path in failed)}")
        self.failed = failed


@attr.s(kw_only=True)
class SecretKeeper:
    """
    Encrypts, decrypts, edits and rekeys the secrets of one project.

    Encrypted files are named the way the configuration names them, which
    is relative to the project root unless the configuration uses an
    absolute path. Plaintext paths are ordinary paths.
    """
    tree: ConfigTree = attr.ib()
    root: pathlib.Path = attr.ib(factory=pathlib.Path.cwd)
    cipher: Age = attr.ib(factory=Age)
    editor: Editor = attr.ib(factory=Editor)
    identity_paths: typing.Sequence[pathlib.Path] = attr.ib(default=())
    _identities: typing.Optional[typing.List[Identity]] = attr.ib(default=None, init=False)

    @property
    def identities(self) -> typing.List[Identity]:
        """Loaded the first time something is decrypted."""
        if self._identities is None:
            self._identities = load_identities(self.identity_paths)
        return self._identities

    def key(self, path: pathlib.Path) -> pathlib.PurePath:
        """
        The name the configuration uses for a path given on the command line.

        An absolute path is kept when the configuration declares it that way,
        otherwise paths inside the project root become relative to it.
        """
        absolute = pathlib.Path(path).absolute()
        sources = self.tree.sources()
        for candidate in (absolute, absolute.resolve()):
            if pathlib.PurePath(candidate) in sources:
                return pathlib.PurePath(candidate)

        for root in (self.root.absolute(), self.root.resolve()):
            try:
                return pathlib.PurePath(absolute.relative_to(root))
            except ValueError:
                continue
        return pathlib.PurePath(path)

    def locate(self, ciphertext: pathlib.PurePath) -> pathlib.Path:
        return self.root / ciphertext

    def resolution(self, ciphertext: pathlib.PurePath) -> Resolution:
        resolution = resolve(self.tree, ciphertext)
        for line in resolution.describe():
            log.info(line)
        return resolution

    def recipients(self, ciphertext: pathlib.PurePath) -> typing.List[Recipient]:
        resolution = self.resolution(ciphertext)
        if not resolution:
            raise NoRecipients(ciphertext)
        return parse_recipients(resolution.recipients)

    def read(self, ciphertext: pathlib.PurePath) -> typing.Optional[bytes]:
        """
        Decrypt a file, returning None if it does not exist.
        """
        path = self.locate(ciphertext)
        if not path.exists():
            log.warning(f"Ciphertext does not exist: {path}")
            return None
        log.debug(f"Decrypting {path}")
        return self.cipher.decrypt(path.read_bytes(), self.identities)

    def write(self, ciphertext: pathlib.PurePath, data: bytes) -> None:
        atomic_write(self.locate(ciphertext), data)

    def encrypt(self, plaintext: pathlib.Path, ciphertext: pathlib.PurePath) -> None:
        if plaintext == STDIO:
            data = sys.stdin.buffer.read()
        elif plaintext.exists():
            data = plaintext.read_bytes()
        else:
            raise ArcanumException(f"Plaintext does not exist at {plaintext}")

        recipients = self.recipients(ciphertext)
        self.write(ciphertext, self.cipher.encrypt(data, recipients))
        log.info(f"Wrote ciphertext to {ciphertext}")

    def decrypt(self, ciphertext: pathlib.PurePath, plaintext: pathlib.Path) -> None:
        data = self.read(ciphertext)

        if plaintext == STDIO:
            sys.stdout.buffer.write(data or b'')
            sys.stdout.buffer.flush()
            return

        if not data:
            log.warning(f"Plaintext is empty, not writing to {plaintext}")
            return

        atomic_write(plaintext, data)
        log.info(f"Wrote plaintext to {plaintext}")

    def edit(self, ciphertext: pathlib.PurePath) -> bool:
        """
        Edit the plaintext of a file in a private temporary directory.

        A file that does not exist yet starts out empty. Returns True if the
        file was re-encrypted. The new ciphertext is decrypted again before it
        replaces the old one.
        """
        self.recipients(ciphertext)
        original = self.read(ciphertext) or b''

        with private_workspace() as workspace:
            path = workspace / f'plaintext{plaintext_suffix(ciphertext)}'
            path.write_bytes(original)
            self.editor.edit_in_place(path)
            edited = path.read_bytes()

        if not edited:
            log.warning(f"Edited plaintext is empty, not writing to {ciphertext}")
            return False

        if edited == original:
            log.warning(f"Plaintext is unchanged, not writing to {ciphertext}")
            log.warning("If you want to re-encrypt the file to new recipients, "
                        "use the 'rekey' command.")
            return False

        data = self.cipher.encrypt(edited, self.recipients(ciphertext))
        self.verify(data, edited, ciphertext)
        self.write(ciphertext, data)
        log.info(f"Wrote ciphertext to {ciphertext}")
        return True

    def verify(self, data: bytes, expected: bytes, ciphertext: pathlib.PurePath) -> None:
        try:
            decrypted = self.cipher.decrypt(data, self.identities)
        except AuthorizationError as error:
            raise VerificationError(
                f"Could not decrypt the new ciphertext for {ciphertext}, "
                f"not writing it: {error.message}") from error
        if decrypted != expected:
            raise VerificationError(
                f"New ciphertext for {ciphertext} does not decrypt to the edited "
                f"plaintext, not writing it")

    def rekey(self, ciphertext: pathlib.PurePath) -> bool:
        """Re-encrypt a file to its current recipients."""
        recipients = self.recipients(ciphertext)
        data = self.read(ciphertext)
        if data is None:
            log.warning(f"Nothing to rekey at {ciphertext}")
            return False

        self.write(ciphertext, self.cipher.encrypt(data, recipients))
        log.info(f"Rekeyed ciphertext at {ciphertext}")
        return True

    def rekey_all(self) -> typing.List[pathlib.PurePath]:
        """
        Rekey every file in the project, continuing past files that fail.

        Raises RekeyFailed after the last file if any of them failed.
        """
        sources = self.tree.sources()
        log.info(f"Rekeying {len(sources)} files")

        rekeyed: typing.List[pathlib.PurePath] = []
        failed: typing.List[pathlib.PurePath] = []
        for source in sources:
            try:
                if self.rekey(source):
                    rekeyed.append(source)
            except (ArcanumException, OSError) as error:
                log.error(f"Skipping {source}: {error}")
                failed.append(source)

        if failed:
            raise RekeyFailed(failed, len(sources))
        return rekeyed
