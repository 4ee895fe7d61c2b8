"""
Resolve a git merge or rebase conflict in an encrypted file.

Git can't merge ciphertext, so both sides of the conflict are read from git,
decrypted, merged as plaintext and encrypted again in place of the
conflicted file. The file can then be marked resolved with 'git add'.

There is no plaintext common ancestor to merge against, so the automatic
merge uses our side as the base. Anything it can't merge is written out
with conflict markers and opened in the editor.
"""

import difflib
import enum
import logging
import pathlib
import typing

import attr
import click

from .recipients import Recipient
from .secrets import SecretKeeper
from .utils import ArcanumException, ExtractionError, VerificationError, private_workspace
from .vcs import BlobNotFound, Git

log = logging.getLogger(__name__)

OURS_MARKER = '<<<<<<< ours'
SEPARATOR_MARKER = '======='
THEIRS_MARKER = '>>>>>>> theirs'

PREVIEW_LINES = 5


class ConflictKind(enum.Enum):
    MERGE = 'merge'
    REBASE = 'rebase'


class State(enum.Enum):
    IDLE = 'idle'
    DETECTING = 'detecting'
    EXTRACTING = 'extracting'
    DECRYPTING = 'decrypting'
    AUTO_MERGING = 'auto-merging'
    RESOLVED = 'resolved'
    MANUAL_EDITING = 'manual-editing'
    VERIFYING = 'verifying'
    REPORTING = 'reporting'
    DONE = 'done'
    ABORTED = 'aborted'


# (primary, fallback) refs for each side of a conflict. ':2' and ':3' are
# the 'ours' and 'theirs' stages of the index.
REFS: typing.Dict[ConflictKind, typing.Dict[str, typing.Tuple[str, str]]] = {
    ConflictKind.MERGE: {
        'ours': ('HEAD', ':2'),
        'theirs': ('MERGE_HEAD', ':3'),
    },
    ConflictKind.REBASE: {
        'ours': (':2', 'HEAD'),
        'theirs': (':3', 'REBASE_HEAD'),
    },
}


def _terminated(text: str) -> str:
    return text if text.endswith('\n') else text + '\n'


def synthesize_conflict(ours: str, theirs: str) -> str:
    """Write both sides out between conflict markers."""
    return (f"{OURS_MARKER}\n{_terminated(ours)}"
            f"{SEPARATOR_MARKER}\n{_terminated(theirs)}"
            f"{THEIRS_MARKER}\n")


def _is_marker(line: str, marker: str) -> bool:
    return line.startswith(marker) and line[len(marker):len(marker) + 1] in ('', ' ')


def has_conflict_markers(text: str) -> bool:
    """
    Look for what is left of a conflict block.

    Only the opening and closing markers count. Every block has both, and a
    separator on its own is ordinary text, such as a heading underline.
    """
    return any(_is_marker(line, '<<<<<<<') or _is_marker(line, '>>>>>>>')
               for line in text.splitlines())


def _decode(data: bytes) -> str:
    return data.decode('utf-8', errors='surrogateescape')


def _encode(text: str) -> bytes:
    return text.encode('utf-8', errors='surrogateescape')


@attr.s(kw_only=True)
class ConflictSession:
    kind: ConflictKind = attr.ib()
    state: State = attr.ib(default=State.IDLE)
    ours_ciphertext: bytes = attr.ib(default=b'')
    theirs_ciphertext: bytes = attr.ib(default=b'')
    ours_plaintext: bytes = attr.ib(default=b'')
    theirs_plaintext: bytes = attr.ib(default=b'')
    merged_plaintext: bytes = attr.ib(default=b'')
    recipients: typing.List[Recipient] = attr.ib(factory=list)


@attr.s(kw_only=True)
class ConflictResolver:
    keeper: SecretKeeper = attr.ib()
    vcs: Git = attr.ib()
    state: State = attr.ib(default=State.IDLE, init=False)

    def transition(self, state: State, session: typing.Optional[ConflictSession] = None):
        log.debug(f"Conflict resolution: {self.state.value} -> {state.value}")
        self.state = state
        if session is not None:
            session.state = state

    def resolve(self, ciphertext: pathlib.PurePath) -> ConflictSession:
        """Run every step, leaving the merged file encrypted in place of the conflict."""
        session: typing.Optional[ConflictSession] = None
        try:
            session = ConflictSession(kind=self.detect(), state=State.DETECTING)
            self.extract(session, ciphertext)
            self.decrypt(session, ciphertext)
            self.merge(session)
            self.verify(session)
            self.report(session)
            self.finish(session, ciphertext)
        except Exception:
            self.transition(State.ABORTED, session)
            raise
        return session

    def detect(self) -> ConflictKind:
        self.transition(State.DETECTING)
        if self.vcs.is_merge_in_progress():
            return ConflictKind.MERGE
        if self.vcs.is_rebase_in_progress():
            return ConflictKind.REBASE
        raise ArcanumException(
            "Not in a conflict: no merge or rebase is in progress, "
            "'arcanum merge' is only useful while resolving a conflict")

    def extract(self, session: ConflictSession, ciphertext: pathlib.PurePath) -> None:
        self.transition(State.EXTRACTING, session)
        path = self.vcs.relative_path(self.keeper.locate(ciphertext))
        refs = REFS[session.kind]
        session.ours_ciphertext = self.extract_side('ours', refs['ours'], path)
        session.theirs_ciphertext = self.extract_side('theirs', refs['theirs'], path)

    def extract_side(self, side: str, refs: typing.Tuple[str, str], path: str) -> bytes:
        failures: typing.List[BlobNotFound] = []
        for ref in refs:
            try:
                data = self.vcs.read_blob(ref, path)
            except BlobNotFound as error:
                log.debug(f"Could not read {side} from {ref}: {error.describe()}")
                failures.append(error)
                continue
            log.info(f"Read {side} version of {path} from {ref}")
            return data

        for failure in failures:
            log.error(failure.describe())
        raise ExtractionError(
            f"Could not read the {side} version of {path}:\n" +
            '\n'.join(f"  {failure.describe()}" for failure in failures))

    def decrypt(self, session: ConflictSession, ciphertext: pathlib.PurePath) -> None:
        self.transition(State.DECRYPTING, session)
        session.recipients = self.keeper.recipients(ciphertext)

        cipher, identities = self.keeper.cipher, self.keeper.identities
        session.ours_plaintext = cipher.decrypt(session.ours_ciphertext, identities)
        session.theirs_plaintext = cipher.decrypt(session.theirs_ciphertext, identities)

        for side, plaintext in (('ours', session.ours_plaintext),
                                ('theirs', session.theirs_plaintext)):
            if not plaintext:
                raise ArcanumException(
                    f"Decrypted {side} version of {ciphertext} is empty, nothing to merge")

    def merge(self, session: ConflictSession) -> None:
        self.transition(State.AUTO_MERGING, session)
        merged = self.vcs.merge_text(
            ours=session.ours_plaintext,
            base=session.ours_plaintext,
            theirs=session.theirs_plaintext)

        if merged is not None:
            log.info("Merged both versions automatically")
            self.transition(State.RESOLVED, session)
            session.merged_plaintext = merged
            return

        self.transition(State.MANUAL_EDITING, session)
        click.secho("Could not merge automatically, opening both versions in your editor",
                    fg='yellow', err=True)
        conflict = synthesize_conflict(
            _decode(session.ours_plaintext), _decode(session.theirs_plaintext))
        with private_workspace() as workspace:
            path = workspace / 'merge.txt'
            path.write_bytes(_encode(conflict))
            self.keeper.editor.edit_in_place(path)
            session.merged_plaintext = path.read_bytes()

    def verify(self, session: ConflictSession) -> None:
        self.transition(State.VERIFYING, session)
        if not session.merged_plaintext:
            raise VerificationError("Merged file is empty, not writing it")
        if has_conflict_markers(_decode(session.merged_plaintext)):
            raise VerificationError("Merged file still contains conflict markers, not writing it")

    def report(self, session: ConflictSession) -> None:
        self.transition(State.REPORTING, session)
        versions = {
            name: data.decode('utf-8', errors='replace')
            for name, data in (('ours', session.ours_plaintext),
                               ('theirs', session.theirs_plaintext),
                               ('merged', session.merged_plaintext))
        }

        for name, text in versions.items():
            click.echo(f"{name}: {len(text.splitlines())} lines, {len(text)} characters", err=True)

        click.echo("Preview of the merged file:", err=True)
        for line in versions['merged'].splitlines()[:PREVIEW_LINES]:
            click.echo(f"  {line}", err=True)

        for a, b in (('ours', 'theirs'), ('ours', 'merged'), ('theirs', 'merged')):
            diff = difflib.unified_diff(
                versions[a].splitlines(keepends=True),
                versions[b].splitlines(keepends=True),
                fromfile=a,
                tofile=b)
            click.echo(''.join(diff), err=True, nl=False)

    def finish(self, session: ConflictSession, ciphertext: pathlib.PurePath) -> None:
        data = self.keeper.cipher.encrypt(session.merged_plaintext, session.recipients)
        self.keeper.write(ciphertext, data)
        self.transition(State.DONE, session)
        click.secho(f"Wrote merged ciphertext to {ciphertext}, "
                    f"run 'git add {ciphertext}' to mark it resolved", fg='green', err=True)
