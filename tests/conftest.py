import base64
import json
import os
import pathlib
import shutil
import typing

import attr
import click.testing
import git
import pytest

import arcanum.cli
from arcanum.age import ARMOR_FOOTER, ARMOR_HEADER, is_armored
from arcanum.cache import Cache
from arcanum.config import ConfigTree
from arcanum.secrets import SecretKeeper
from arcanum.utils import AuthorizationError

ALICE = 'age1alice'
BOB = 'age1bob'
HOST = 'ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHost root@host'
ADMIN = 'age1admin'

TREE = {
    'flake': {
        'adminRecipients': [ADMIN],
        'files': {
            'project-env': {
                'source': 'secrets/project.env.age',
                'dest': '/run/project.env',
                'recipients': [ALICE],
            },
        },
    },
    'nixos': {
        'host': {
            'adminRecipients': [HOST],
            'files': {
                'database': {
                    'source': 'secrets/database.json.age',
                    'dest': '/run/secrets/database.json',
                    'directoryPermissions': '0750',
                    'makeDirectory': True,
                    'permissions': '0400',
                    'owner': 'postgres',
                    'group': 'postgres',
                    'recipients': [BOB],
                },
            },
        },
    },
    'homeManager': {
        'laptop': {
            'alice': {
                'adminRecipients': [ALICE],
                'files': {
                    'env': {
                        'source': 'secrets/project.env.age',
                        'dest': '/home/alice/.env',
                        'recipients': [BOB],
                    },
                },
            },
        },
    },
    'devShells': {
        'x86_64-linux': {
            'default': {
                'adminRecipients': [],
                'files': {},
            },
        },
    },
}


@attr.s
class FakeCipher:
    """
    Stands in for age: the 'ciphertext' is armored JSON naming the recipients.

    Decryption succeeds when one of the authorized recipients is among them.
    """
    authorized: typing.Set[str] = attr.ib(factory=lambda: {ALICE})
    encrypted: typing.List[bytes] = attr.ib(factory=list)

    def encrypt(self, plaintext: bytes, recipients) -> bytes:
        self.encrypted.append(plaintext)
        payload = json.dumps({
            'recipients': sorted(str(r) for r in recipients),
            'plaintext': base64.b64encode(plaintext).decode('ascii'),
        }).encode('ascii')
        return b'\n'.join([ARMOR_HEADER, base64.b64encode(payload), ARMOR_FOOTER, b''])

    def decrypt(self, ciphertext: bytes, identities) -> bytes:
        if not is_armored(ciphertext):
            raise AuthorizationError("Not an age file")
        payload = json.loads(base64.b64decode(ciphertext.strip().splitlines()[1]))
        if not self.authorized & set(payload['recipients']):
            raise AuthorizationError("No identity matched any of the recipients")
        return base64.b64decode(payload['plaintext'])

    @staticmethod
    def recipients_of(ciphertext: bytes) -> typing.List[str]:
        return json.loads(base64.b64decode(ciphertext.strip().splitlines()[1]))['recipients']


class CorruptingCipher(FakeCipher):
    def encrypt(self, plaintext: bytes, recipients) -> bytes:
        return super().encrypt(plaintext, recipients).replace(ARMOR_HEADER, b'garbage')


@attr.s
class FakeEditor:
    """Rewrites the file it is asked to edit with `transform`."""
    transform: typing.Callable[[bytes], bytes] = attr.ib(default=lambda data: data)
    edited: typing.List[pathlib.Path] = attr.ib(factory=list)
    seen: typing.List[bytes] = attr.ib(factory=list)

    def resolve_editor_command(self) -> str:
        return 'fake-editor'

    def edit_in_place(self, path: pathlib.Path) -> None:
        self.edited.append(path)
        data = path.read_bytes()
        self.seen.append(data)
        path.write_bytes(self.transform(data))


@pytest.fixture()
def tree() -> ConfigTree:
    return ConfigTree.from_json(TREE)


@pytest.fixture()
def cipher() -> FakeCipher:
    return FakeCipher()


@pytest.fixture()
def editor() -> FakeEditor:
    return FakeEditor()


@pytest.fixture()
def root(tmp_path) -> pathlib.Path:
    root = tmp_path / 'project'
    (root / 'secrets').mkdir(parents=True)
    (root / 'flake.nix').write_text('{}\n')
    return root.resolve()


@pytest.fixture()
def keeper(tree, root, cipher, editor) -> SecretKeeper:
    return SecretKeeper(tree=tree, root=root, cipher=cipher, editor=editor)


@pytest.fixture()
def cache_dir(tmp_path, root) -> pathlib.Path:
    directory = tmp_path / 'cache'
    cache = Cache(project_root=root, directory=directory)
    directory.mkdir()
    cache.path.write_text(json.dumps(TREE))
    return directory


@pytest.fixture()
def invoke(monkeypatch, root, cache_dir, cipher, editor):
    monkeypatch.setattr(arcanum.cli, 'Age', lambda **kwargs: cipher)
    monkeypatch.setattr(arcanum.cli, 'Editor', lambda: editor)

    def invoke_func(arguments: typing.Sequence[str], **kwargs) -> click.testing.Result:
        assert all(isinstance(arg, str) for arg in arguments)
        runner = click.testing.CliRunner()
        return runner.invoke(
            arcanum.cli.main,
            ['-p', str(root), '--cache-dir', str(cache_dir), *arguments],
            **kwargs)

    return invoke_func


@pytest.fixture(autouse=True)
def home(monkeypatch, tmp_path) -> pathlib.Path:
    """Keep the real ~/.ssh keys out of the tests."""
    home = tmp_path / 'home'
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    return home


@pytest.fixture()
def git_env(monkeypatch):
    if shutil.which('git') is None:
        pytest.skip("git is not installed")
    monkeypatch.setenv('GIT_CONFIG_GLOBAL', os.devnull)
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    for name in ('AUTHOR', 'COMMITTER'):
        monkeypatch.setenv(f'GIT_{name}_NAME', 'Arcanum Tests')
        monkeypatch.setenv(f'GIT_{name}_EMAIL', 'tests@example.invalid')


def commit(repo: git.Repo, path: pathlib.Path, data: bytes, message: str) -> None:
    path.write_bytes(data)
    repo.git.add(str(path))
    repo.git.commit('-m', message)


@pytest.fixture()
def conflicted(git_env, root, cipher) -> git.Repo:
    """A repository in the middle of merging two edits to secrets/project.env.age."""
    repo = git.Repo.init(root)
    path = root / 'secrets' / 'project.env.age'
    commit(repo, path, cipher.encrypt(b'a\n', [ALICE]), 'Add secret')
    repo.git.checkout('-b', 'theirs')
    commit(repo, path, cipher.encrypt(b'a\nc\n', [ALICE]), 'Their change')
    repo.git.checkout('-')
    commit(repo, path, cipher.encrypt(b'a\nb\n', [ALICE]), 'Our change')
    with pytest.raises(git.exc.GitCommandError):
        repo.git.merge('theirs')
    return repo
