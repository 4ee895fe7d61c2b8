import functools
import logging
import pathlib
import typing

import attr
import click

from . import __doc__, __version__
from .age import DEFAULT_PROMPT_TIMEOUT, Age
from .cache import DEFAULT_CACHE_DIRECTORY, Cache
from .config import ConfigTree
from .editor import Editor
from .merge import ConflictResolver
from .secrets import SecretKeeper
from .utils import find_project_root
from .vcs import Git

log = logging.getLogger(__name__)


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


@attr.s(kw_only=True)
class Project:
    """Everything a command needs, loaded when the command first asks for it."""
    root: pathlib.Path = attr.ib()
    cache: Cache = attr.ib()
    cipher: Age = attr.ib()
    editor: Editor = attr.ib()
    identity_paths: typing.Sequence[pathlib.Path] = attr.ib(default=())

    @functools.cached_property
    def tree(self) -> ConfigTree:
        return self.cache.load_or_generate()

    @functools.cached_property
    def keeper(self) -> SecretKeeper:
        return SecretKeeper(
            tree=self.tree,
            root=self.root,
            cipher=self.cipher,
            editor=self.editor,
            identity_paths=self.identity_paths)


ciphertext_argument = click.argument(
    'ciphertext',
    type=PathType(dir_okay=False),
    required=True)


@click.group(help=__doc__)
@click.option(
    '-p', '--path',
    type=PathType(
        file_okay=False,
        dir_okay=True,
        exists=True),
    default=find_project_root,
    help="Defaults to the nearest directory with a flake.nix, or the current git repository.")
@click.option(
    '-i', '--identity', 'identities',
    metavar='PATH',
    envvar='ARCANUM_IDENTITIES',
    multiple=True,
    type=PathType(dir_okay=False),
    help="Identity files to decrypt with, in addition to ~/.ssh/id_ed25519 and ~/.ssh/id_rsa.")
@click.option(
    '--cache-dir',
    envvar='ARCANUM_CACHE_DIR',
    type=PathType(file_okay=False),
    default=DEFAULT_CACHE_DIRECTORY,
    show_default=True,
    help="Directory the evaluated project configuration is cached in.")
@click.option(
    '--prompt-timeout',
    type=click.FLOAT,
    default=DEFAULT_PROMPT_TIMEOUT,
    show_default=True,
    help="Seconds to wait for a passphrase for an encrypted identity.")
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
@click.pass_context
def main(
        ctx,
        path: typing.Optional[pathlib.Path],
        identities: typing.Sequence[pathlib.Path],
        cache_dir: pathlib.Path,
        prompt_timeout: float,
        debug: bool):
    logging.basicConfig(
        level=(logging.DEBUG if debug else logging.INFO),
        format=('%(levelname)s %(name)s: %(message)s' if debug else '%(message)s'),
        force=True)

    if path is None:
        raise click.ClickException("Could not find project root, are you in a project?")

    root = path.resolve()
    ctx.obj = Project(
        root=root,
        cache=Cache(project_root=root, directory=cache_dir),
        cipher=Age(prompt_timeout=prompt_timeout),
        editor=Editor(),
        identity_paths=tuple(identities))


@main.command()
def version():
    """Show the application version."""
    click.echo(f"arcanum {__version__}")


@main.command()
@click.pass_obj
def cache(project: Project):
    """
    Regenerate the cache file for the current project.

    Needed when adding new files to the project or changing the recipients.
    """
    tree = project.cache.load_or_generate(regenerate=True)
    click.echo(f"Cached {len(tree.sources())} files in {project.cache.path}")


@main.command()
@click.pass_obj
def ls(project: Project):
    """List every encrypted file with the path it is installed to."""
    seen = set()
    for _, _, entry in sorted(project.tree.entries(), key=lambda e: (e[2].source, e[0])):
        if (entry.source, entry.dest) in seen:
            continue
        seen.add((entry.source, entry.dest))
        click.echo(f"{click.style(str(entry.source), fg='green')} -> {entry.dest}")


@main.command()
@ciphertext_argument
@click.pass_obj
def recipients(project: Project, ciphertext: pathlib.Path):
    """Show who a file is encrypted to, and which scopes added them."""
    keeper = project.keeper
    for line in keeper.resolution(keeper.key(ciphertext)).describe():
        click.echo(line)


@main.command()
@click.argument('plaintext', type=PathType(dir_okay=False, allow_dash=True), required=True)
@ciphertext_argument
@click.pass_obj
def encrypt(project: Project, plaintext: pathlib.Path, ciphertext: pathlib.Path):
    """
    Encrypt a file to its configured recipients.

    Reads from stdin if PLAINTEXT is '-'.
    """
    project.keeper.encrypt(plaintext, project.keeper.key(ciphertext))


@main.command()
@ciphertext_argument
@click.argument('plaintext', type=PathType(dir_okay=False, allow_dash=True), required=True)
@click.pass_obj
def decrypt(project: Project, ciphertext: pathlib.Path, plaintext: pathlib.Path):
    """
    Decrypt a file.

    Writes to stdout if PLAINTEXT is '-'. An empty plaintext is never written to a file.
    """
    project.keeper.decrypt(project.keeper.key(ciphertext), plaintext)


@main.command()
@ciphertext_argument
@click.pass_obj
def edit(project: Project, ciphertext: pathlib.Path):
    """
    Edit the plaintext of a file in your $EDITOR.

    The plaintext is only written to a private temporary directory. New
    files are created by editing a path that doesn't exist yet.
    """
    project.keeper.edit(project.keeper.key(ciphertext))


@main.command()
@click.argument('ciphertext', type=PathType(dir_okay=False), required=False)
@click.pass_obj
def rekey(project: Project, ciphertext: typing.Optional[pathlib.Path]):
    """
    Re-encrypt a file to all configured recipients.

    If no path is provided, rekeys every file in the project.
    """
    if ciphertext is not None:
        project.keeper.rekey(project.keeper.key(ciphertext))
        return

    rekeyed = project.keeper.rekey_all()
    click.echo(f"Rekeyed {len(rekeyed)} files", err=True)


@main.command()
@ciphertext_argument
@click.pass_obj
def merge(project: Project, ciphertext: pathlib.Path):
    """
    Resolve a git merge or rebase conflict in an encrypted file.

    Both versions are decrypted and merged. If they can't be merged
    automatically they're opened in your $EDITOR with conflict markers.
    """
    resolver = ConflictResolver(
        keeper=project.keeper,
        vcs=Git.discover(project.root))
    resolver.resolve(project.keeper.key(ciphertext))
