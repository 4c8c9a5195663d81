"""Generation session store.

The store holds one immutable ``StoreState`` at a time. Every mutation reads
the latest state under a lock, builds a replacement and publishes it, so an
operation that resumes after an ``await`` never writes back a stale copy.

Scene-level results are applied through a ``SceneRef`` captured when the
request was made. The ref names the scene by id, so the result lands on the
right scene even if derivative scenes were spliced in while it was pending.
"""

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from typing import NamedTuple

from . import clips
from .errors import STOPPED, InvalidRequest, SessionNotFound
from .ids import IdSource
from .models import (
    DEFAULT_CAMERA_MOVEMENT,
    DEFAULT_SPEAKER,
    Character,
    GenerationParams,
    ImageResult,
    Scene,
    SceneStatus,
    Session,
    Snapshot,
    VideoClip,
    VideoState,
    VideoStatus,
    VoiceoverMode,
)

logger = logging.getLogger(__name__)

Listener = Callable[["StoreState"], None]


class SceneRef(NamedTuple):
    """Stable address of a scene, independent of its position."""

    session_id: int
    scene_id: int


class StoreState(Snapshot):
    """Immutable view of every session."""

    sessions: tuple[Session, ...] = ()
    active_session_index: int = -1

    @property
    def active_session(self) -> Session | None:
        if 0 <= self.active_session_index < len(self.sessions):
            return self.sessions[self.active_session_index]
        return None

    def find(self, session_id: int) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None


def detect_speaker(script: str, characters: Iterable[Character] = ()) -> str:
    """Speaker named by a leading ``Name:`` prefix, else the narrator."""
    head, sep, _ = script.partition(":")
    if not sep or "\n" in head or not head.strip():
        return DEFAULT_SPEAKER
    name = head.strip()
    for character in characters:
        if character.name.lower() == name.lower():
            return character.name
    return name


def shift_after_insert(pointer: int, after_index: int, count: int) -> int:
    """Recompute an external scene pointer after ``count`` scenes were spliced in."""
    if pointer > after_index:
        return pointer + count
    return pointer


def shift_after_removal(pointer: int, removed_index: int) -> int:
    """Recompute an external scene pointer after one scene was spliced out."""
    if pointer == removed_index:
        return -1
    if pointer > removed_index:
        return pointer - 1
    return pointer


class SessionStore:
    """Aggregate root for sessions, scenes and their video states."""

    def __init__(
        self,
        sessions: Sequence[Session] = (),
        ids: IdSource | None = None,
    ) -> None:
        self._ids = ids or IdSource()
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._state = StoreState(
            sessions=tuple(sessions),
            active_session_index=len(sessions) - 1,
        )
        self._seed_ids(self._state)

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def sessions(self) -> tuple[Session, ...]:
        return self._state.sessions

    def get(self, session_id: int) -> Session:
        session = self._state.find(session_id)
        if session is None:
            msg = f"Session {session_id} not found"
            raise SessionNotFound(msg)
        return session

    def scene(self, ref: SceneRef) -> Scene | None:
        session = self._state.find(ref.session_id)
        if session is None:
            return None
        index = session.index_of(ref.scene_id)
        return None if index is None else session.scenes[index]

    def scene_ref(self, session_id: int, scene_index: int) -> SceneRef:
        """Pin the scene currently at ``scene_index``."""
        session = self.get(session_id)
        if not 0 <= scene_index < len(session.scenes):
            msg = f"Session {session_id} has no scene {scene_index}"
            raise SessionNotFound(msg)
        return SceneRef(session_id, session.scenes[scene_index].id)

    def index_of(self, ref: SceneRef) -> int | None:
        session = self._state.find(ref.session_id)
        return None if session is None else session.index_of(ref.scene_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every new state. Returns an unsubscribe hook."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def replace_all(self, sessions: Sequence[Session]) -> None:
        """Swap in sessions loaded from storage."""
        state = StoreState(sessions=tuple(sessions), active_session_index=len(sessions) - 1)
        self._seed_ids(state)
        self._commit(lambda _: state)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _seed_ids(self, state: StoreState) -> None:
        for session in state.sessions:
            self._ids.seed(session.id)
            for scene in session.scenes:
                self._ids.seed(scene.id)

    def _commit(self, transform: Callable[[StoreState], StoreState]) -> StoreState:
        with self._lock:
            current = self._state
            updated = transform(current)
            if updated is current:
                return current
            self._state = updated
        for listener in list(self._listeners):
            listener(updated)
        return updated

    def _update_session(
        self,
        session_id: int,
        transform: Callable[[Session], Session],
    ) -> bool:
        changed = False

        def apply(state: StoreState) -> StoreState:
            nonlocal changed
            sessions = list(state.sessions)
            for i, session in enumerate(sessions):
                if session.id == session_id:
                    updated = transform(session)
                    if updated is session:
                        return state
                    sessions[i] = updated
                    changed = True
                    return state.model_copy(update={"sessions": tuple(sessions)})
            logger.debug("Session %s is gone; ignoring update", session_id)
            return state

        self._commit(apply)
        return changed

    def _update_scene(self, ref: SceneRef, transform: Callable[[Scene], Scene]) -> bool:
        def apply(session: Session) -> Session:
            index = session.index_of(ref.scene_id)
            if index is None:
                logger.debug("Scene %s is gone from session %s", ref.scene_id, ref.session_id)
                return session
            scene = session.scenes[index]
            updated = transform(scene)
            if updated is scene:
                return session
            scenes = list(session.scenes)
            scenes[index] = updated
            return session.model_copy(update={"scenes": tuple(scenes)})

        return self._update_session(ref.session_id, apply)

    def _update_video(
        self,
        ref: SceneRef,
        transform: Callable[[VideoState], VideoState],
    ) -> bool:
        def apply(scene: Scene) -> Scene:
            video = transform(scene.video)
            if video is scene.video:
                return scene
            return scene.model_copy(update={"video": video})

        return self._update_scene(ref, apply)

    def _placeholder(self, prompt: str, video: VideoState | None = None) -> Scene:
        return Scene(id=self._ids.next_id(), prompt=prompt, video=video or VideoState())

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        title: str,
        count: int,
        params: GenerationParams | None = None,
        prompts: Sequence[str] | None = None,
        scripts: Sequence[str] | None = None,
    ) -> int:
        """Append a session of ``count`` pending scenes and make it active."""
        if count < 1:
            msg = "A session needs at least one scene"
            raise InvalidRequest(msg)
        params = params or GenerationParams()
        scenes = []
        for i in range(count):
            prompt = prompts[i] if prompts and i < len(prompts) else title
            script = scripts[i] if scripts and i < len(scripts) else ""
            video = VideoState(
                script=script,
                speaker=detect_speaker(script, params.characters),
            )
            scenes.append(self._placeholder(prompt, video))
        session = Session(
            id=self._ids.next_id(),
            title=title,
            params=params,
            scenes=tuple(scenes),
        )
        self.add_session(session)
        return session.id

    def add_session(self, session: Session) -> None:
        """Append a fully-formed session (restored bookmark, upload) and activate it."""
        self._commit(
            lambda state: state.model_copy(
                update={
                    "sessions": (*state.sessions, session),
                    "active_session_index": len(state.sessions),
                },
            ),
        )

    def new_session(
        self,
        title: str,
        scenes: Sequence[Scene],
        params: GenerationParams | None = None,
    ) -> Session:
        return Session(
            id=self._ids.next_id(),
            title=title,
            params=params or GenerationParams(),
            scenes=tuple(scenes),
        )

    def new_scene(self, prompt: str, **fields) -> Scene:
        return Scene(id=self._ids.next_id(), prompt=prompt, **fields)

    def append_placeholders(self, session_id: int, prompts: Sequence[str]) -> list[SceneRef]:
        """Add pending scenes to the end of an open session."""
        placeholders = [self._placeholder(prompt) for prompt in prompts]

        def apply(session: Session) -> Session:
            if session.closed:
                msg = f"Session {session_id} is closed"
                raise InvalidRequest(msg)
            return session.model_copy(update={"scenes": (*session.scenes, *placeholders)})

        self.get(session_id)
        self._update_session(session_id, apply)
        return [SceneRef(session_id, scene.id) for scene in placeholders]

    def set_active_session(self, index: int) -> None:
        def apply(state: StoreState) -> StoreState:
            if not 0 <= index < len(state.sessions) or index == state.active_session_index:
                return state
            return state.model_copy(update={"active_session_index": index})

        self._commit(apply)

    def delete_session(self, session_id: int) -> bool:
        removed = False

        def apply(state: StoreState) -> StoreState:
            nonlocal removed
            for i, session in enumerate(state.sessions):
                if session.id == session_id:
                    removed = True
                    sessions = state.sessions[:i] + state.sessions[i + 1 :]
                    active = state.active_session_index
                    if active > i or active >= len(sessions):
                        active -= 1
                    return StoreState(sessions=sessions, active_session_index=active)
            return state

        self._commit(apply)
        return removed

    def close_session(self, session_id: int) -> None:
        self._update_session(
            session_id,
            lambda s: s if s.closed else s.model_copy(update={"closed": True}),
        )

    def reopen_session(self, session_id: int) -> None:
        self._update_session(
            session_id,
            lambda s: s.model_copy(update={"closed": False}) if s.closed else s,
        )

    # ------------------------------------------------------------------
    # Scenes
    # ------------------------------------------------------------------

    def begin_scene_generation(self, ref: SceneRef) -> bool:
        """Mark a scene as generating. No-op if it no longer exists."""
        return self._update_scene(
            ref,
            lambda scene: scene.model_copy(
                update={"status": SceneStatus.GENERATING, "error": None},
            ),
        )

    def complete_scene_generation(self, ref: SceneRef, result: ImageResult) -> bool:
        """Store an image or an error on the scene.

        Tolerates the session or scene having been removed meanwhile.
        """

        def apply(scene: Scene) -> Scene:
            update: dict = {"mime_type": result.mime_type}
            if result.prompt:
                update["prompt"] = result.prompt
            if result.ok:
                update.update(image=result.image, error=None, status=SceneStatus.COMPLETE)
            else:
                update.update(error=result.error or "No image returned.", status=SceneStatus.ERROR)
            return scene.model_copy(update=update)

        return self._update_scene(ref, apply)

    def fail_scene(self, ref: SceneRef, message: str) -> bool:
        """Put an in-flight scene into the error state, keeping any prior image."""
        return self._update_scene(
            ref,
            lambda scene: scene.model_copy(
                update={"status": SceneStatus.ERROR, "error": message, "generating_angles": False},
            ),
        )

    def set_scene_image(self, ref: SceneRef, image: bytes) -> bool:
        return self._update_scene(
            ref,
            lambda scene: scene.model_copy(
                update={"image": image, "error": None, "status": SceneStatus.COMPLETE},
            ),
        )

    def set_editing(self, ref: SceneRef, editing: bool) -> bool:
        return self._update_scene(
            ref,
            lambda scene: scene
            if scene.editing == editing
            else scene.model_copy(update={"editing": editing}),
        )

    def set_generating_angles(self, ref: SceneRef, flag: bool) -> bool:
        return self._update_scene(
            ref,
            lambda scene: scene
            if scene.generating_angles == flag
            else scene.model_copy(update={"generating_angles": flag}),
        )

    def insert_derived_scenes(
        self,
        session_id: int,
        after_index: int,
        derived: Sequence[ImageResult],
    ) -> list[SceneRef]:
        """Splice camera-angle derivatives right after their parent.

        Callers tracking a scene pointer beyond ``after_index`` must move it
        by ``len(derived)``; see ``shift_after_insert``.
        """
        new_scenes: list[Scene] = []

        def apply(session: Session) -> Session:
            if not 0 <= after_index < len(session.scenes):
                msg = f"Session {session_id} has no scene {after_index}"
                raise SessionNotFound(msg)
            parent = session.scenes[after_index]
            for result in derived:
                video = VideoState(
                    script=parent.video.script,
                    speaker=parent.video.speaker,
                    voiceover_mode=parent.video.voiceover_mode,
                    voiceover_audio=parent.video.voiceover_audio,
                    camera_movement=DEFAULT_CAMERA_MOVEMENT,
                )
                new_scenes.append(
                    Scene(
                        id=self._ids.next_id(),
                        prompt=result.prompt or parent.prompt,
                        image=result.image,
                        mime_type=result.mime_type,
                        error=None if result.ok else (result.error or "No image returned."),
                        status=SceneStatus.COMPLETE if result.ok else SceneStatus.ERROR,
                        angle_of=after_index,
                        angle_name=result.angle_name,
                        video=video,
                    ),
                )
            shifted = {i: shift_after_insert(i, after_index, len(new_scenes))
                       for i in range(len(session.scenes))}
            tail = tuple(_remap_angle(s, shifted) for s in session.scenes[after_index + 1 :])
            scenes = session.scenes[: after_index + 1] + tuple(new_scenes) + tail
            return session.model_copy(update={"scenes": scenes})

        if not derived:
            return []
        self.get(session_id)
        self._update_session(session_id, apply)
        return [SceneRef(session_id, scene.id) for scene in new_scenes]

    def remove_scene(
        self,
        session_id: int,
        scene_index: int,
        derivative_only: bool = False,
    ) -> bool:
        """Hide a scene, or splice it out if it is an angle derivative.

        With ``derivative_only`` only derivatives are touched. A session left
        with no visible scenes is closed.
        """

        def apply(session: Session) -> Session:
            if not 0 <= scene_index < len(session.scenes):
                return session
            scene = session.scenes[scene_index]
            if derivative_only:
                if not scene.is_derivative:
                    return session
                scenes = session.scenes[:scene_index] + session.scenes[scene_index + 1 :]
                scenes = tuple(_reindex_angle(s, scene_index, scene.angle_of) for s in scenes)
            else:
                if scene.hidden:
                    return session
                scenes = list(session.scenes)
                scenes[scene_index] = scene.model_copy(update={"hidden": True})
                scenes = tuple(scenes)
            update: dict = {"scenes": scenes}
            if not any(not s.hidden for s in scenes):
                update["closed"] = True
            return session.model_copy(update=update)

        return self._update_session(session_id, apply)

    def restore_scene(self, session_id: int, scene_index: int) -> bool:
        def apply(session: Session) -> Session:
            if not 0 <= scene_index < len(session.scenes):
                return session
            scene = session.scenes[scene_index]
            if not scene.hidden:
                return session
            scenes = list(session.scenes)
            scenes[scene_index] = scene.model_copy(update={"hidden": False})
            return session.model_copy(update={"scenes": tuple(scenes)})

        return self._update_session(session_id, apply)

    def reorder_scenes(self, session_id: int, from_index: int, to_index: int) -> bool:
        """Move one scene (and with it its video state) to a new position."""

        def apply(session: Session) -> Session:
            count = len(session.scenes)
            if not (0 <= from_index < count and 0 <= to_index < count) or from_index == to_index:
                return session
            order = list(range(count))
            order.insert(to_index, order.pop(from_index))
            position = {old: new for new, old in enumerate(order)}
            scenes = tuple(
                _remap_angle(session.scenes[old], position) for old in order
            )
            return session.model_copy(update={"scenes": scenes})

        return self._update_session(session_id, apply)

    # ------------------------------------------------------------------
    # Video state
    # ------------------------------------------------------------------

    def update_video(self, ref: SceneRef, **fields) -> bool:
        return self._update_video(ref, lambda video: video.model_copy(update=fields))

    def set_script(
        self,
        ref: SceneRef,
        script: str,
        characters: Iterable[Character] = (),
    ) -> bool:
        speaker = detect_speaker(script, characters)
        return self.update_video(ref, script=script, speaker=speaker)

    def set_camera_movement(self, ref: SceneRef, movement: str) -> bool:
        return self.update_video(ref, camera_movement=movement)

    def set_voiceover(
        self,
        ref: SceneRef,
        mode: VoiceoverMode,
        audio: bytes | None = None,
    ) -> bool:
        fields: dict = {"voiceover_mode": mode}
        if audio is not None:
            fields["voiceover_audio"] = audio
        return self.update_video(ref, **fields)

    def toggle_lip_sync(self, ref: SceneRef) -> bool:
        return self._update_video(
            ref,
            lambda video: video.model_copy(update={"use_lip_sync": not video.use_lip_sync}),
        )

    def begin_video(self, ref: SceneRef, message: str = "Initializing...") -> bool:
        return self._update_video(ref, lambda video: clips.begin_loading(video, message))

    def video_progress(self, ref: SceneRef, message: str) -> bool:
        return self._update_video(ref, lambda video: clips.set_progress(video, message))

    def fail_video(self, ref: SceneRef, message: str) -> bool:
        return self._update_video(ref, lambda video: clips.fail(video, message))

    def append_clip(self, ref: SceneRef, clip: VideoClip) -> bool:
        return self._update_video(ref, lambda video: clips.append_clip(video, clip))

    def remove_last_clip(self, ref: SceneRef) -> bool:
        return self._update_video(ref, clips.remove_last_clip)

    def navigate_clip(self, ref: SceneRef, step: int) -> bool:
        return self._update_video(ref, lambda video: clips.navigate(video, step))

    def extension_handle(self, ref: SceneRef) -> str:
        """Continuation handle of the scene's latest clip.

        Raises:
            SessionNotFound: If the scene is gone.
            ExtensionUnavailable: If there is nothing to extend.

        """
        scene = self.scene(ref)
        if scene is None:
            msg = f"Scene {ref.scene_id} not found"
            raise SessionNotFound(msg)
        return clips.continuation_handle(scene.video)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def stop_in_flight(self, message: str = STOPPED) -> int:
        """Fail every generating scene and loading video with ``message``.

        Pending scenes that were never attempted are left alone.
        Returns the number of records touched.
        """
        touched = 0

        def stop_scene(scene: Scene) -> Scene:
            nonlocal touched
            update: dict = {}
            if scene.status == SceneStatus.GENERATING:
                update.update(status=SceneStatus.ERROR, error=message)
            if scene.generating_angles:
                update.update(generating_angles=False, error=message)
            if scene.video.status == VideoStatus.LOADING:
                update["video"] = clips.fail(scene.video, message)
            if not update:
                return scene
            touched += 1
            return scene.model_copy(update=update)

        def apply(state: StoreState) -> StoreState:
            sessions = []
            changed = False
            for session in state.sessions:
                scenes = tuple(stop_scene(scene) for scene in session.scenes)
                if any(a is not b for a, b in zip(scenes, session.scenes, strict=True)):
                    changed = True
                    session = session.model_copy(update={"scenes": scenes})
                sessions.append(session)
            if not changed:
                return state
            return state.model_copy(update={"sessions": tuple(sessions)})

        self._commit(apply)
        return touched


def _reindex_angle(scene: Scene, removed_index: int, removed_parent: int | None) -> Scene:
    if scene.angle_of is None or scene.angle_of < removed_index:
        return scene
    if scene.angle_of == removed_index:
        # Children of the removed scene move up to its own parent.
        parent = removed_parent
        if parent is not None and parent > removed_index:
            parent -= 1
        return scene.model_copy(update={"angle_of": parent})
    return scene.model_copy(update={"angle_of": scene.angle_of - 1})


def _remap_angle(scene: Scene, position: dict[int, int]) -> Scene:
    if scene.angle_of is None or scene.angle_of not in position:
        return scene
    return scene.model_copy(update={"angle_of": position[scene.angle_of]})
