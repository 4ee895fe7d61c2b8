import hashlib
import logging
import pathlib
import subprocess
import typing

import attr
from platformdirs import user_cache_dir

from .config import ConfigTree
from .utils import ConfigError, atomic_write

log = logging.getLogger(__name__)

APP_NAME = 'arcanum'
DEFAULT_CACHE_DIRECTORY = pathlib.Path(user_cache_dir(APP_NAME, appauthor=False))


def cache_identity(project_root: pathlib.Path) -> str:
    """A short, stable name for a project's cache file."""
    digest = hashlib.sha3_256(str(project_root).encode('utf-8')).hexdigest()
    return digest[:8]


@attr.s(frozen=True)
class NixEvaluator:
    attribute: str = attr.ib(default='.#lib.arcanum')

    def command(self) -> typing.Tuple[str, ...]:
        return ('nix', 'eval', '--json', self.attribute)

    def evaluate(self, project_root: pathlib.Path) -> bytes:
        log.info(f"Evaluating {self.attribute} in {project_root}")
        try:
            result = subprocess.run(
                self.command(),
                cwd=project_root,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE)
        except FileNotFoundError as error:
            raise ConfigError(
                f"Could not run {' '.join(self.command())}: {error}") from error

        if result.returncode != 0:
            stdout = result.stdout.decode('utf-8', errors='replace')
            stderr = result.stderr.decode('utf-8', errors='replace')
            for line in stderr.splitlines():
                log.error(line)
            raise ConfigError(
                f"{' '.join(self.command())} failed with exit status {result.returncode}\n"
                f"stdout: {stdout}\n"
                f"stderr: {stderr}")

        return result.stdout


@attr.s(frozen=True, kw_only=True)
class Cache:
    project_root: pathlib.Path = attr.ib()
    directory: pathlib.Path = attr.ib(default=DEFAULT_CACHE_DIRECTORY)
    evaluator: NixEvaluator = attr.ib(factory=NixEvaluator)

    @property
    def path(self) -> pathlib.Path:
        return self.directory / f"{APP_NAME}-{cache_identity(self.project_root)}.json"

    def load_or_generate(self, regenerate: bool = False) -> ConfigTree:
        log.info(f"Using cache file at {self.path}")
        if regenerate or not self.path.exists():
            return self.generate()
        return self.load()

    def load(self) -> ConfigTree:
        log.debug(f"Reading cache file {self.path}")
        try:
            return ConfigTree.loads(self.path.read_bytes())
        except ConfigError as error:
            raise ConfigError(
                f"Cache file {self.path} is malformed, run 'arcanum cache' "
                f"to regenerate it: {error.message}") from error

    def generate(self) -> ConfigTree:
        """Evaluate the project and replace the cache file with the result."""
        data = self.evaluator.evaluate(self.project_root)
        tree = ConfigTree.loads(data)

        self.directory.mkdir(parents=True, exist_ok=True)
        atomic_write(self.path, data)
        log.info(f"Wrote cache file {self.path}")
        return tree
