import contextlib
import logging
import os
import pathlib
import stat
import tempfile
import typing

import click
import git

log = logging.getLogger(__name__)


class ArcanumException(click.ClickException):
    pass


class ConfigError(ArcanumException):
    """The cached configuration is missing, malformed, or could not be generated."""


class ResolutionError(ArcanumException):
    pass


class NoRecipients(ResolutionError):
    def __init__(self, source: pathlib.PurePath):
        super().__init__(f"No recipients found for {source}")
        self.source = source


class AuthorizationError(ArcanumException):
    """None of the local identities can decrypt a file."""


class ExtractionError(ArcanumException):
    pass


class VerificationError(ArcanumException):
    pass


def find_project_root(
        start: typing.Optional[pathlib.Path] = None) -> typing.Optional[pathlib.Path]:
    """
    Find the nearest directory containing a flake.nix.

    Falls back to the working tree of the enclosing git repository.
    """
    start = (start or pathlib.Path.cwd()).resolve()
    for directory in (start, *start.parents):
        if (directory / 'flake.nix').is_file():
            return directory

    try:
        repo = git.Repo(start, search_parent_directories=True)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
        return None
    return pathlib.Path(repo.working_dir)


def atomic_write(path: pathlib.Path, data: bytes) -> None:
    """
    Replace the contents of a file without leaving it half written.

    An existing file keeps its mode, a new one is only readable by its owner.
    """
    path = pathlib.Path(path)
    fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'wb') as f:
            if path.exists():
                os.fchmod(f.fileno(), stat.S_IMODE(path.stat().st_mode))
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


@contextlib.contextmanager
def private_workspace() -> typing.Iterator[pathlib.Path]:
    """
    Yield a directory only the current user can read.

    The directory and everything written to it are removed when the
    context exits, whether or not an exception was raised.
    """
    with tempfile.TemporaryDirectory(prefix='arcanum-') as directory:
        log.debug(f"Created private workspace {directory}")
        yield pathlib.Path(directory)
    log.debug(f"Removed private workspace {directory}")


def plaintext_suffix(path: pathlib.PurePath) -> str:
    """
    The extension of the plaintext an encrypted file holds.

    'project.env.age' holds a '.env' file.
    """
    return pathlib.PurePath(path.stem).suffix
