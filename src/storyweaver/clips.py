"""Video clip chain transforms.

Each function takes a VideoState and returns a new one. The clip list is
append-only apart from popping the tail, and every clip after the first was
requested from its predecessor's continuation handle.
"""

from .errors import ExtensionUnavailable
from .models import NO_CLIP, VideoClip, VideoState, VideoStatus


def append_clip(state: VideoState, clip: VideoClip) -> VideoState:
    """Append ``clip`` and select it."""
    clips = (*state.clips, clip)
    return state.model_copy(
        update={
            "clips": clips,
            "current_clip_index": len(clips) - 1,
            "status": VideoStatus.SUCCESS,
            "loading_message": "",
            "error": None,
        },
    )


def continuation_handle(state: VideoState) -> str:
    """Handle to extend from: always the tail clip's, never the selected one's.

    Raises:
        ExtensionUnavailable: If there are no clips or the last one cannot be
            extended.

    """
    if not state.clips or not state.clips[-1].extendable:
        raise ExtensionUnavailable()
    return state.clips[-1].continuation_handle


def remove_last_clip(state: VideoState) -> VideoState:
    if not state.clips:
        return state
    clips = state.clips[:-1]
    index = min(state.current_clip_index, len(clips) - 1) if clips else NO_CLIP
    return state.model_copy(update={"clips": clips, "current_clip_index": index})


def navigate(state: VideoState, step: int) -> VideoState:
    """Move the selection by ``step``, clamped to the clip list."""
    if not state.clips:
        return state
    index = max(0, min(len(state.clips) - 1, state.current_clip_index + step))
    if index == state.current_clip_index:
        return state
    return state.model_copy(update={"current_clip_index": index})


def begin_loading(state: VideoState, message: str) -> VideoState:
    return state.model_copy(
        update={"status": VideoStatus.LOADING, "error": None, "loading_message": message},
    )


def set_progress(state: VideoState, message: str) -> VideoState:
    if state.status != VideoStatus.LOADING:
        return state
    return state.model_copy(update={"loading_message": message})


def fail(state: VideoState, message: str) -> VideoState:
    """Record a failure without touching the existing clips."""
    return state.model_copy(
        update={"status": VideoStatus.ERROR, "error": message, "loading_message": ""},
    )
