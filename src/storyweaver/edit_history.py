"""Undo/redo history for an in-progress image edit."""

from dataclasses import dataclass, field


class EditHistory:
    """Linear undo stack of image states.

    Applying a new edit after undoing discards everything that could have
    been redone, the same way a text editor behaves.
    """

    def __init__(self, initial: bytes) -> None:
        self._states: list[bytes] = [initial]
        self._index = 0

    @property
    def current(self) -> bytes:
        return self._states[self._index]

    @property
    def index(self) -> int:
        return self._index

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._states) - 1

    def __len__(self) -> int:
        return len(self._states)

    def apply(self, state: bytes) -> bytes:
        del self._states[self._index + 1 :]
        self._states.append(state)
        self._index = len(self._states) - 1
        return state

    def undo(self) -> bytes:
        if self.can_undo:
            self._index -= 1
        return self.current

    def redo(self) -> bytes:
        if self.can_redo:
            self._index += 1
        return self.current


@dataclass
class EditSession:
    """An open edit of one scene's image."""

    session_id: int
    scene_id: int
    original: bytes
    prompt: str = ""
    in_flight: bool = False
    error: str | None = None
    history: EditHistory = field(init=False)

    def __post_init__(self) -> None:
        self.history = EditHistory(self.original)

    @property
    def image(self) -> bytes:
        return self.history.current

    @property
    def changed(self) -> bool:
        return self.image != self.original
