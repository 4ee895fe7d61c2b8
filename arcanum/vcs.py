import logging
import pathlib
import typing

import attr
import git

from .utils import ArcanumException, private_workspace

log = logging.getLogger(__name__)


class BlobNotFound(Exception):
    def __init__(self, ref: str, path: str, status: typing.Optional[int], stderr: str):
        super().__init__(f"Could not read {ref}:{path}")
        self.ref = ref
        self.path = path
        self.status = status
        self.stderr = stderr

    def describe(self) -> str:
        return (f"git show {self.ref}:{self.path} "
                f"(exit status {self.status}): {self.stderr.strip()}")


def _stderr(error: git.exc.GitCommandError) -> str:
    stderr = error.stderr
    if isinstance(stderr, bytes):
        stderr = stderr.decode('utf-8', errors='replace')
    return str(stderr or '')


@attr.s(frozen=True)
class Git:
    repo: git.Repo = attr.ib()

    @classmethod
    def discover(cls, path: pathlib.Path) -> 'Git':
        try:
            return cls(git.Repo(path, search_parent_directories=True))
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as error:
            raise ArcanumException(f"{path} is not in a git repository") from error

    @property
    def git_dir(self) -> pathlib.Path:
        return pathlib.Path(self.repo.git_dir)

    @property
    def working_dir(self) -> pathlib.Path:
        return pathlib.Path(self.repo.working_dir)

    def is_merge_in_progress(self) -> bool:
        return (self.git_dir / 'MERGE_HEAD').exists()

    def is_rebase_in_progress(self) -> bool:
        return any((self.git_dir / name).exists() for name in ('rebase-merge', 'rebase-apply'))

    def relative_path(self, path: pathlib.Path) -> str:
        """A path in the form git expects in '<ref>:<path>'."""
        path = pathlib.Path(path).absolute()
        try:
            return path.relative_to(self.working_dir.resolve()).as_posix()
        except ValueError:
            return path.resolve().relative_to(self.working_dir.resolve()).as_posix()

    def read_blob(self, ref: str, path: str) -> bytes:
        """
        Read a file at a ref ('HEAD', 'MERGE_HEAD') or an index stage (':2', ':3').
        """
        log.debug(f"Reading {ref}:{path}")
        try:
            return self.repo.git.show(
                f'{ref}:{path}',
                stdout_as_string=False,
                strip_newline_in_stdout=False)
        except git.exc.GitCommandError as error:
            raise BlobNotFound(ref, path, error.status, _stderr(error)) from error

    def merge_text(self, ours: bytes, base: bytes, theirs: bytes) -> typing.Optional[bytes]:
        """
        Merge two versions of a text with 'git merge-file'.

        Returns None when the versions conflict.
        """
        with private_workspace() as workspace:
            paths = []
            for name, data in (('ours', ours), ('base', base), ('theirs', theirs)):
                path = workspace / name
                path.write_bytes(data)
                paths.append(str(path))

            try:
                return self.repo.git.merge_file(
                    '-p', '-L', 'ours', '-L', 'base', '-L', 'theirs', *paths,
                    stdout_as_string=False,
                    strip_newline_in_stdout=False)
            except git.exc.GitCommandError as error:
                log.info(f"git merge-file could not merge cleanly (exit status {error.status})")
                return None
