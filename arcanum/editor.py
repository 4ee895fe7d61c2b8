import logging
import pathlib

import attr
import click
import click._termui_impl

log = logging.getLogger(__name__)


@attr.s(frozen=True)
class Editor:
    """Open files in $VISUAL or $EDITOR, using click's editor lookup."""
    command: str = attr.ib(default=None)

    def resolve_editor_command(self) -> str:
        return click._termui_impl.Editor(editor=self.command).get_editor()  # type: ignore

    def edit_in_place(self, path: pathlib.Path) -> None:
        """Block until the editor exits."""
        log.info(f"Opening plaintext in editor: {self.resolve_editor_command()}")
        click.edit(editor=self.command, filename=str(path))
