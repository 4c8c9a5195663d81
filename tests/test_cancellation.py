import pytest

from storyweaver.cancellation import CancellationController
from storyweaver.errors import UserCancelled


def test_new_operation_supersedes_previous() -> None:
    controller = CancellationController()
    first = controller.start_operation()
    assert controller.active
    assert not first.cancelled

    second = controller.start_operation()

    assert first.cancelled
    assert not second.cancelled


def test_stop_invalidates_live_token() -> None:
    controller = CancellationController()
    assert not controller.stop()

    token = controller.start_operation()
    assert controller.stop()

    assert token.cancelled
    assert not controller.active
    assert not controller.stop()
    with pytest.raises(UserCancelled, match="Stopped"):
        token.raise_if_cancelled()


def test_finish_only_releases_owner() -> None:
    controller = CancellationController()
    old = controller.start_operation()
    new = controller.start_operation()

    controller.finish(old)
    assert controller.active
    assert controller.is_live(new)

    controller.finish(new)
    assert not controller.active
