from storyweaver.edit_history import EditHistory, EditSession


def test_undo_redo_walks_the_stack() -> None:
    history = EditHistory(b"original")
    history.apply(b"first")
    history.apply(b"second")

    assert len(history) == 3
    assert history.undo() == b"first"
    assert history.undo() == b"original"
    assert not history.can_undo
    assert history.undo() == b"original"

    assert history.redo() == b"first"
    assert history.redo() == b"second"
    assert not history.can_redo
    assert history.redo() == b"second"


def test_apply_after_undo_discards_redo_branch() -> None:
    history = EditHistory(b"original")
    history.apply(b"first")
    history.apply(b"second")
    history.undo()

    history.apply(b"branch")

    assert len(history) == 3
    assert history.current == b"branch"
    assert not history.can_redo
    assert history.undo() == b"first"


def test_edit_session_tracks_changes() -> None:
    edit = EditSession(session_id=1, scene_id=2, original=b"original")
    assert edit.image == b"original"
    assert not edit.changed

    edit.history.apply(b"edited")
    assert edit.image == b"edited"
    assert edit.changed

    edit.history.undo()
    assert not edit.changed
