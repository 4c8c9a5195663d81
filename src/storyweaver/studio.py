"""Studio: the composition root driving every user-level operation.

Each generation follows the same shape: validate, check the daily allowance
(and the balance, for video), put a placeholder in the store, take a
cancellation token, await the service, and only then apply the result to the
scene the request was made for. Credit is debited after a confirmed success
and never otherwise.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Sequence
from datetime import date

from .cancellation import CancellationController, CancellationToken
from .config import Settings
from .edit_history import EditSession
from .errors import (
    STOPPED,
    ExtensionUnavailable,
    InvalidRequest,
    ServiceFailure,
    SessionNotFound,
    UserCancelled,
    parse_error_message,
    video_error_message,
)
from .ids import IdSource
from .ledger import CreditLedger, UsageTracker
from .models import (
    Character,
    CreditState,
    DailyLimits,
    DailyUsage,
    GenerationParams,
    ImageResult,
    SavedItem,
    SceneStatus,
    StudioSnapshot,
    VideoClip,
    VideoStatus,
    VoiceoverMode,
)
from .persistence import (
    CHARACTERS_KEY,
    CREDITS_KEY,
    LIMITS_KEY,
    USAGE_KEY,
    BookmarkRepository,
    FileKeyValueStore,
    HistoryRepository,
    KeyValueStore,
    SettingsRepository,
)
from .service import Storybook, StorybookScene
from .store import SceneRef, SessionStore, shift_after_insert, shift_after_removal

logger = logging.getLogger(__name__)

STORAGE_FULL = "Storage is full; older history was not saved."
ANALYSIS_STOPPED = "Analysis stopped."
DAY_SECONDS = 24 * 60 * 60


class Studio:
    """Owns the store, the cancellation channel, the ledger and persistence."""

    def __init__(
        self,
        service,
        settings: Settings | None = None,
        backend: KeyValueStore | None = None,
        ids: IdSource | None = None,
        clock=time.time,
        today=date.today,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.service = service
        self._clock = clock
        self._sleep = sleep
        self._today = today
        self._ids = ids or IdSource(clock)
        if backend is None:
            backend = FileKeyValueStore(self.settings.data_dir, self.settings.storage_capacity)
        self.history = HistoryRepository(backend)
        self.bookmark_repo = BookmarkRepository(backend, clock)
        self.settings_repo = SettingsRepository(backend)

        self.store = SessionStore(ids=self._ids)
        self.controller = CancellationController()
        self.ledger = CreditLedger(rates=self.settings.currency_rates)
        self.usage = UsageTracker(today=today)
        self.characters: tuple[Character, ...] = ()
        self.bookmarks: list[SavedItem] = []
        self.edit: EditSession | None = None
        self.active_scene_index = -1
        self.status_message = ""
        self.error: str | None = None
        self._persist_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Snapshot and persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> StudioSnapshot:
        state = self.store.state
        return StudioSnapshot(
            sessions=state.sessions,
            active_session_index=state.active_session_index,
            active_scene_index=self.active_scene_index,
            characters=self.characters,
            credits=self.ledger.state,
            usage=self.usage.usage,
            status_message=self.status_message,
            error=self.error,
        )

    def load(self) -> None:
        """Restore everything persisted by a previous run."""
        self.store.replace_all(self.history.load())
        self.bookmarks = self.bookmark_repo.load()
        self.characters = tuple(self.settings_repo.load_list(CHARACTERS_KEY, Character))
        credits = self.settings_repo.load(CREDITS_KEY, CreditState)
        if credits is not None:
            self.ledger = CreditLedger(credits, rates=self.settings.currency_rates)
        usage = self.settings_repo.load(USAGE_KEY, DailyUsage)
        limits = self.settings_repo.load(LIMITS_KEY, DailyLimits)
        self.usage = UsageTracker(usage, limits, today=self._today)
        self.active_scene_index = -1

    def persist(self) -> None:
        """Write the current state; concurrent flushes run one at a time."""
        with self._persist_lock:
            report = self.history.save(self.store.sessions)
            if report.cleared:
                self.status_message = STORAGE_FULL
            self.settings_repo.save(CREDITS_KEY, self.ledger.state)
            self.settings_repo.save(USAGE_KEY, self.usage.usage)
            self.settings_repo.save(LIMITS_KEY, self.usage.limits)

    async def flush(self) -> None:
        await asyncio.to_thread(self.persist)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def default_params(self, **overrides) -> GenerationParams:
        fields = {"characters": self.characters, "image_model": self.settings.image_model}
        fields.update(overrides)
        return GenerationParams(**fields)

    def _charge(self, kind: str, unit_cost: float, count: int = 1) -> None:
        if count <= 0:
            return
        self.ledger.debit(unit_cost * count)
        self.usage.record(kind, count)

    def _start(self) -> CancellationToken:
        self.error = None
        return self.controller.start_operation()

    def _abandon_scene(self, ref: SceneRef) -> None:
        scene = self.store.scene(ref)
        if scene is not None and scene.status == SceneStatus.GENERATING:
            self.store.fail_scene(ref, STOPPED)

    def _abandon_video(self, ref: SceneRef) -> None:
        scene = self.store.scene(ref)
        if scene is not None and scene.video.status == VideoStatus.LOADING:
            self.store.fail_video(ref, STOPPED)

    def _is_active(self, session_id: int) -> bool:
        active = self.store.state.active_session
        return active is not None and active.id == session_id

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def stop(self) -> bool:
        """Abort whatever is running and mark every in-flight record "Stopped"."""
        if not self.controller.stop():
            return False
        touched = self.store.stop_in_flight(STOPPED)
        if self.edit is not None and self.edit.in_flight:
            self.edit.in_flight = False
            self.edit.error = STOPPED
        if any(c.describing for c in self.characters):
            self.characters = tuple(
                c.model_copy(update={"describing": False})
                if c.describing
                else c
                for c in self.characters
            )
        self.status_message = STOPPED
        self.error = None
        logger.info("Stopped; %d record(s) marked", touched)
        return True

    # ------------------------------------------------------------------
    # Scene generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        count: int = 1,
        params: GenerationParams | None = None,
        session_id: int | None = None,
    ) -> int:
        """Generate ``count`` scenes one after another.

        Results land on the scene reserved for them regardless of timing.
        Scenes never attempted because of a stop stay pending.
        """
        if not prompt.strip():
            msg = "Prompt must not be empty"
            raise InvalidRequest(msg)
        if count < 1:
            msg = "Scene count must be at least 1"
            raise InvalidRequest(msg)
        self.usage.check("images", count)

        if session_id is not None:
            session = self.store.get(session_id)
            params = params or session.params
            refs = self.store.append_placeholders(session_id, [prompt] * count)
        else:
            params = params or self.default_params()
            session_id = self.store.create_session(prompt, count, params)
            refs = [self.store.scene_ref(session_id, i) for i in range(count)]
        self.active_scene_index = -1

        token = self._start()
        try:
            self.status_message = "Drafting scenes..."
            try:
                prompts = await self.service.draft_scene_prompts(
                    prompt, count, params.genre, params.characters, token=token,
                )
            except UserCancelled:
                return session_id
            except Exception as e:  # noqa: BLE001
                logger.warning("Scene drafting failed, using the base prompt: %s", e)
                prompts = [prompt] * count
            await self._render_batch(refs, prompts, params, token)
        finally:
            await self._settle_batch(token)
        return session_id

    async def _render_batch(
        self,
        refs: Sequence[SceneRef],
        prompts: Sequence[str],
        params: GenerationParams,
        token: CancellationToken,
    ) -> None:
        """Render reserved scenes in order, pausing between service calls."""
        for i, ref in enumerate(refs):
            if token.cancelled:
                break
            remaining = len(refs) - i
            self.status_message = (
                f"Generating... {remaining} remaining" if remaining > 1 else "Generating scene..."
            )
            self.store.begin_scene_generation(ref)
            try:
                result = await self.service.generate_image(prompts[i], params, token=token)
            except UserCancelled:
                self._abandon_scene(ref)
                break
            if token.cancelled:
                self._abandon_scene(ref)
                break
            self.store.complete_scene_generation(ref, result.model_copy(update={"prompt": prompts[i]}))
            if result.ok:
                self._charge("images", self.settings.pricing.image)
            if i < len(refs) - 1:
                await self._sleep(self.settings.batch_delay)

    async def _settle_batch(self, token: CancellationToken) -> None:
        if not token.cancelled:
            self.status_message = ""
        self.controller.finish(token)
        await self.flush()

    async def regenerate_scene(self, session_id: int, scene_index: int) -> ImageResult | None:
        ref = self.store.scene_ref(session_id, scene_index)
        self.usage.check("images", 1)
        session = self.store.get(session_id)
        scene = self.store.scene(ref)

        token = self._start()
        self.store.begin_scene_generation(ref)
        try:
            try:
                result = await self.service.generate_image(scene.prompt, session.params, token=token)
            except UserCancelled:
                self._abandon_scene(ref)
                return None
            if token.cancelled:
                self._abandon_scene(ref)
                return None
            self.store.complete_scene_generation(ref, result)
            if result.ok:
                self._charge("images", self.settings.pricing.image)
            return result
        finally:
            self.controller.finish(token)
            await self.flush()

    # ------------------------------------------------------------------
    # Storybook
    # ------------------------------------------------------------------

    async def _draft(self, request, failure: str, status: str):
        token = self._start()
        self.status_message = status
        try:
            result = await request(token)
            token.raise_if_cancelled()
            return result
        except UserCancelled:
            raise
        except Exception as e:
            self.error = f"{failure}: {parse_error_message(e)}"
            raise ServiceFailure(self.error) from e
        finally:
            if not token.cancelled:
                self.status_message = ""
            self.controller.finish(token)

    async def draft_storybook(self, idea: str, title: str = "", dialogue: bool = True) -> Storybook:
        """Have the service write a story and break it into scenes."""
        if not idea.strip():
            msg = "Describe the story idea"
            raise InvalidRequest(msg)
        return await self._draft(
            lambda token: self.service.draft_storybook(
                idea, title, self.characters, dialogue, token=token,
            ),
            "Failed to get story idea",
            "Writing story...",
        )

    async def storybook_from_narrative(
        self,
        narrative: str,
        dialogue: bool = True,
    ) -> list[StorybookScene]:
        if not narrative.strip():
            msg = "Narrative must not be empty"
            raise InvalidRequest(msg)
        return await self._draft(
            lambda token: self.service.scenes_from_narrative(
                narrative, self.characters, dialogue, token=token,
            ),
            "Failed to analyze story",
            "Analyzing story...",
        )

    async def generate_from_script(
        self,
        title: str,
        scenes: Sequence[StorybookScene],
        params: GenerationParams | None = None,
    ) -> int:
        """Build a session from storybook scenes, one image per scene.

        Each scene keeps its own prompt, and its narration becomes the
        scene's script with the speaker detected from it.
        """
        if not scenes:
            msg = "The storybook has no scenes to generate"
            raise InvalidRequest(msg)
        self.usage.check("images", len(scenes))
        if params is None:
            text = " ".join(f"{s.image_description} {s.narration}" for s in scenes).lower()
            cast = tuple(c for c in self.characters if c.name and c.name.lower() in text)
            params = self.default_params(characters=cast)

        prompts = [s.image_description for s in scenes]
        session_id = self.store.create_session(
            title.strip() or "From Storybook",
            len(scenes),
            params,
            prompts=prompts,
            scripts=[s.narration for s in scenes],
        )
        refs = [self.store.scene_ref(session_id, i) for i in range(len(scenes))]
        self.active_scene_index = -1

        token = self._start()
        try:
            await self._render_batch(refs, prompts, params, token)
        finally:
            await self._settle_batch(token)
        return session_id

    # ------------------------------------------------------------------
    # Camera angles
    # ------------------------------------------------------------------

    async def generate_camera_angles(
        self,
        session_id: int,
        scene_index: int,
        angles: Sequence[str],
        focus_subject: str | None = None,
    ) -> list[SceneRef]:
        """Splice one derivative scene per angle right after the source scene."""
        if not angles:
            msg = "Select at least one camera angle"
            raise InvalidRequest(msg)
        ref = self.store.scene_ref(session_id, scene_index)
        scene = self.store.scene(ref)
        if not scene.image:
            msg = "Scene has no image to derive angles from"
            raise InvalidRequest(msg)
        self.usage.check("images", len(angles))
        params = self.store.get(session_id).params

        token = self._start()
        self.store.set_generating_angles(ref, True)
        self.status_message = "Generating camera angles..."
        try:
            try:
                results = await self.service.generate_camera_angles(
                    scene,
                    angles,
                    params,
                    focus_subject=focus_subject,
                    on_progress=self._set_status,
                    token=token,
                )
            except UserCancelled:
                return []
            except Exception as e:  # noqa: BLE001
                self.error = f"Failed to generate angles: {parse_error_message(e)}"
                return []
            if token.cancelled:
                return []
            parent_index = self.store.index_of(ref)
            if parent_index is None:
                return []
            refs = self.store.insert_derived_scenes(session_id, parent_index, results)
            if self._is_active(session_id):
                self.active_scene_index = shift_after_insert(
                    self.active_scene_index, parent_index, len(refs),
                )
            self._charge("images", self.settings.pricing.image, sum(1 for r in results if r.ok))
            return refs
        finally:
            self.store.set_generating_angles(ref, False)
            if not token.cancelled:
                self.status_message = ""
            self.controller.finish(token)
            await self.flush()

    def _set_status(self, message: str) -> None:
        self.status_message = message

    def remove_scene(self, session_id: int, scene_index: int, derivative_only: bool = False) -> bool:
        removed = self.store.remove_scene(session_id, scene_index, derivative_only=derivative_only)
        if removed and derivative_only and self._is_active(session_id):
            self.active_scene_index = shift_after_removal(self.active_scene_index, scene_index)
        return removed

    def restore_scene(self, session_id: int, scene_index: int) -> bool:
        return self.store.restore_scene(session_id, scene_index)

    def select_scene(self, scene_index: int) -> None:
        """Toggle the scene whose video panel is open."""
        self.active_scene_index = -1 if scene_index == self.active_scene_index else scene_index

    def select_session(self, index: int) -> None:
        self.store.set_active_session(index)
        self.active_scene_index = -1

    # ------------------------------------------------------------------
    # Video clips
    # ------------------------------------------------------------------

    async def generate_clip(
        self,
        session_id: int,
        scene_index: int,
        extend: bool = False,
    ) -> VideoClip | None:
        """Generate a clip for a scene, or extend the scene's latest clip.

        Returns the new clip, or None if the attempt failed or was stopped;
        the outcome is recorded on the scene's video state either way.

        Raises:
            ExtensionUnavailable: If ``extend`` is set and the last clip
                carries no continuation handle.

        """
        ref = self.store.scene_ref(session_id, scene_index)
        scene = self.store.scene(ref)
        if scene.video.status == VideoStatus.LOADING:
            msg = "A clip is already being generated for this scene"
            raise InvalidRequest(msg)
        if not scene.image:
            msg = "Scene has no image to animate"
            raise InvalidRequest(msg)

        handle = None
        if extend:
            try:
                handle = self.store.extension_handle(ref)
            except ExtensionUnavailable as e:
                self.store.fail_video(ref, str(e))
                raise
        self.usage.check("videos", 1)
        self.ledger.require(self.settings.pricing.video)

        params = self.store.get(session_id).params
        video = scene.video
        voiceover = video.voiceover_audio if video.voiceover_mode == VoiceoverMode.UPLOADED else None
        script = video.script if video.voiceover_mode == VoiceoverMode.SYNTHESIZED else ""

        token = self._start()
        self.store.begin_video(ref, "Initializing extension..." if extend else "Initializing...")
        try:
            try:
                clip = await self.service.generate_video(
                    scene,
                    script,
                    params,
                    video.camera_movement,
                    continuation_handle=handle,
                    voiceover=voiceover,
                    lip_sync=video.use_lip_sync,
                    resolution=self.settings.video_resolution,
                    on_progress=lambda message: self.store.video_progress(ref, message),
                    token=token,
                )
            except UserCancelled:
                self._abandon_video(ref)
                return None
            except Exception as e:  # noqa: BLE001
                logger.error("Video generation failed: %s", e)
                self.store.fail_video(ref, video_error_message(e))
                return None
            if token.cancelled:
                self._abandon_video(ref)
                return None
            self.store.append_clip(ref, clip)
            self._charge("videos", self.settings.pricing.video)
            return clip
        finally:
            self.controller.finish(token)
            await self.flush()

    async def extend_clip(self, session_id: int, scene_index: int) -> VideoClip | None:
        return await self.generate_clip(session_id, scene_index, extend=True)

    def remove_last_clip(self, session_id: int, scene_index: int) -> bool:
        return self.store.remove_last_clip(self.store.scene_ref(session_id, scene_index))

    def navigate_clip(self, session_id: int, scene_index: int, direction: str) -> bool:
        if direction not in ("prev", "next"):
            msg = f"Unknown direction: {direction}"
            raise InvalidRequest(msg)
        step = -1 if direction == "prev" else 1
        return self.store.navigate_clip(self.store.scene_ref(session_id, scene_index), step)

    def set_script(self, session_id: int, scene_index: int, script: str) -> bool:
        ref = self.store.scene_ref(session_id, scene_index)
        return self.store.set_script(ref, script, self.characters)

    def set_camera_movement(self, session_id: int, scene_index: int, movement: str) -> bool:
        return self.store.set_camera_movement(self.store.scene_ref(session_id, scene_index), movement)

    def set_voiceover(
        self,
        session_id: int,
        scene_index: int,
        mode: VoiceoverMode,
        audio: bytes | None = None,
    ) -> bool:
        return self.store.set_voiceover(self.store.scene_ref(session_id, scene_index), mode, audio)

    def toggle_lip_sync(self, session_id: int, scene_index: int) -> bool:
        return self.store.toggle_lip_sync(self.store.scene_ref(session_id, scene_index))

    # ------------------------------------------------------------------
    # Image editing
    # ------------------------------------------------------------------

    def start_edit(self, session_id: int, scene_index: int) -> EditSession:
        ref = self.store.scene_ref(session_id, scene_index)
        scene = self.store.scene(ref)
        if not scene.image:
            msg = "Scene has no image to edit"
            raise InvalidRequest(msg)
        if self.edit is not None:
            self.cancel_edit()
        self.edit = EditSession(session_id=session_id, scene_id=ref.scene_id, original=scene.image)
        self.store.set_editing(ref, True)
        return self.edit

    def _edit_ref(self) -> SceneRef:
        if self.edit is None:
            msg = "No edit in progress"
            raise InvalidRequest(msg)
        return SceneRef(self.edit.session_id, self.edit.scene_id)

    async def submit_edit(
        self,
        prompt: str,
        mask_overlay: bytes | None = None,
        reference_image: tuple[bytes, str] | None = None,
    ) -> ImageResult | None:
        """Run one edit pass and push the result onto the edit history."""
        ref = self._edit_ref()
        edit = self.edit
        if not prompt.strip() and mask_overlay is None:
            msg = "Describe the edit or paint a mask"
            raise InvalidRequest(msg)
        self.usage.check("images", 1)
        try:
            params = self.store.get(ref.session_id).params
        except SessionNotFound:
            self.edit = None
            raise

        token = self._start()
        edit.in_flight = True
        edit.error = None
        edit.prompt = prompt
        try:
            try:
                result = await self.service.edit_image(
                    edit.image,
                    prompt,
                    params,
                    mask_overlay=mask_overlay,
                    reference_image=reference_image,
                    token=token,
                )
            except UserCancelled:
                edit.in_flight = False
                edit.error = STOPPED
                return None
            if token.cancelled:
                edit.in_flight = False
                edit.error = STOPPED
                return None
            edit.in_flight = False
            if self.edit is not edit:
                return None
            if not result.ok:
                edit.error = result.error
                return result
            edit.history.apply(result.image)
            self.store.set_scene_image(ref, result.image)
            self._charge("images", self.settings.pricing.edit)
            return result
        finally:
            self.controller.finish(token)

    def undo_edit(self) -> bytes:
        ref = self._edit_ref()
        image = self.edit.history.undo()
        self.store.set_scene_image(ref, image)
        return image

    def redo_edit(self) -> bytes:
        ref = self._edit_ref()
        image = self.edit.history.redo()
        self.store.set_scene_image(ref, image)
        return image

    def save_edit(self) -> None:
        """Commit the image at the current history position to the scene."""
        ref = self._edit_ref()
        self.store.set_scene_image(ref, self.edit.image)
        self.store.set_editing(ref, False)
        self.edit = None
        self.persist()

    def cancel_edit(self) -> None:
        """Drop every edit and put the pre-edit image back."""
        ref = self._edit_ref()
        self.store.set_scene_image(ref, self.edit.original)
        self.store.set_editing(ref, False)
        self.edit = None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def close_session(self, session_id: int) -> None:
        self.store.close_session(session_id)

    def reopen_session(self, session_id: int) -> None:
        self.store.reopen_session(session_id)

    def delete_session(self, session_id: int) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            self.persist()
        return removed

    def reorder_scenes(self, session_id: int, from_index: int, to_index: int) -> bool:
        return self.store.reorder_scenes(session_id, from_index, to_index)

    def upload_image(
        self,
        image: bytes,
        name: str,
        mime_type: str = "image/png",
        aspect_ratio: str = "16:9",
    ) -> int:
        """Start a session from a user-provided image. Costs nothing."""
        title = f"Uploaded: {name}"
        scene = self.store.new_scene(
            title, image=image, mime_type=mime_type, status=SceneStatus.COMPLETE,
        )
        params = self.default_params(aspect_ratio=aspect_ratio, style="Realistic Photo", characters=())
        session = self.store.new_session(title, [scene], params)
        self.store.add_session(session)
        self.active_scene_index = -1
        self.persist()
        return session.id

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------

    def is_bookmarked(self, session_id: int, scene_index: int) -> bool:
        ref = self.store.scene_ref(session_id, scene_index)
        item_id = SavedItem.make_id(*ref)
        return any(item.id == item_id for item in self.bookmarks)

    def toggle_bookmark(self, session_id: int, scene_index: int) -> bool:
        """Save or unsave a scene. Returns True if it is saved afterwards."""
        ref = self.store.scene_ref(session_id, scene_index)
        item_id = SavedItem.make_id(*ref)
        if any(item.id == item_id for item in self.bookmarks):
            self.bookmarks = [item for item in self.bookmarks if item.id != item_id]
            saved = False
        else:
            session = self.store.get(session_id)
            now = self._clock()
            item = SavedItem(
                id=item_id,
                session_id=session_id,
                scene=self.store.scene(ref),
                title=session.title,
                params=session.params,
                created_at=now,
                expires_at=now + self.settings.bookmark_ttl_days * DAY_SECONDS,
            )
            self.bookmarks = [item, *self.bookmarks]
            saved = True
        report = self.bookmark_repo.save(self.bookmarks)
        if report.evicted:
            kept = {item.id for item in self.bookmarks[: report.written]}
            self.bookmarks = [item for item in self.bookmarks if item.id in kept]
        return saved and any(item.id == item_id for item in self.bookmarks)

    def restore_bookmark(self, item_id: str) -> int:
        """Open a saved scene as a new one-scene session."""
        for item in self.bookmarks:
            if item.id == item_id:
                scene = self.store.new_scene(
                    item.scene.prompt,
                    **item.scene.model_dump(exclude={"id", "prompt", "editing"}),
                )
                session = self.store.new_session(item.title, [scene], item.params)
                self.store.add_session(session)
                self.active_scene_index = -1
                self.persist()
                return session.id
        msg = f"No saved item {item_id}"
        raise SessionNotFound(msg)

    # ------------------------------------------------------------------
    # Characters and audio
    # ------------------------------------------------------------------

    def add_character(
        self,
        name: str,
        image: bytes | None = None,
        mime_type: str | None = None,
        description: str | None = None,
    ) -> Character:
        next_id = max((c.id for c in self.characters), default=0) + 1
        character = Character(
            id=next_id,
            name=name,
            image=image,
            image_mime_type=mime_type,
            description=description,
        )
        self.characters = (*self.characters, character)
        self.settings_repo.save_list(CHARACTERS_KEY, self.characters)
        return character

    def update_character(self, character_id: int, **fields) -> Character:
        for character in self.characters:
            if character.id == character_id:
                updated = character.model_copy(update=fields)
                self.characters = tuple(
                    updated if c.id == character_id else c for c in self.characters
                )
                self.settings_repo.save_list(CHARACTERS_KEY, self.characters)
                return updated
        msg = f"No character {character_id}"
        raise SessionNotFound(msg)

    def remove_character(self, character_id: int) -> None:
        self.characters = tuple(c for c in self.characters if c.id != character_id)
        self.settings_repo.save_list(CHARACTERS_KEY, self.characters)

    async def describe_character(self, character_id: int) -> Character:
        """Fill in a character's description from its reference image.

        Raises:
            UserCancelled: If stopped while the analysis ran.
            ServiceFailure: If the analysis failed.

        """
        character = next((c for c in self.characters if c.id == character_id), None)
        if character is None:
            msg = f"No character {character_id}"
            raise SessionNotFound(msg)
        if not character.image:
            msg = "Character has no reference image"
            raise InvalidRequest(msg)

        token = self._start()
        self.update_character(character_id, describing=True)
        try:
            try:
                result = await self.service.describe_character(
                    character.image, character.image_mime_type or "image/png", token=token,
                )
            except UserCancelled:
                self.update_character(character_id, describing=False, description=ANALYSIS_STOPPED)
                raise
            except Exception as e:
                self.update_character(character_id, describing=False)
                self.error = f"Character analysis failed: {parse_error_message(e)}"
                raise ServiceFailure(self.error) from e
            if token.cancelled:
                self.update_character(character_id, describing=False, description=ANALYSIS_STOPPED)
                raise UserCancelled()
            return self.update_character(
                character_id,
                describing=False,
                description=result.description,
                detected_style=result.detected_style,
            )
        finally:
            self.controller.finish(token)

    async def build_character_visual(self, character_id: int) -> Character:
        """Draw a reference image for a character from its description.

        Raises:
            UserCancelled: If stopped while drawing.
            ServiceFailure: If no image came back.

        """
        character = next((c for c in self.characters if c.id == character_id), None)
        if character is None:
            msg = f"No character {character_id}"
            raise SessionNotFound(msg)
        if not character.name or not character.description:
            msg = "Character needs a name and description to be built."
            raise InvalidRequest(msg)
        self.usage.check("images", 1)
        style = self.default_params().style

        token = self._start()
        self.update_character(character_id, describing=True)
        try:
            try:
                result = await self.service.generate_character_visual(
                    character.name, character.description, style, token=token,
                )
            except UserCancelled:
                self.update_character(character_id, describing=False)
                raise
            if token.cancelled:
                self.update_character(character_id, describing=False)
                raise UserCancelled()
            if not result.ok:
                self.update_character(character_id, describing=False)
                self.error = f"Character build failed: {result.error}"
                raise ServiceFailure(self.error)
            self._charge("images", self.settings.pricing.image)
            return self.update_character(
                character_id,
                describing=False,
                image=result.image,
                image_mime_type=result.mime_type,
                detected_style=style,
            )
        finally:
            self.controller.finish(token)
            await self.flush()

    async def transcribe_audio(self, audio: bytes, mime_type: str) -> str:
        """Turn recorded speech into prompt text.

        Raises:
            UserCancelled: If stopped while transcribing.

        """
        token = self._start()
        try:
            text = await self.service.transcribe_audio(audio, mime_type, token=token)
            if token.cancelled:
                raise UserCancelled()
            return text
        finally:
            self.controller.finish(token)

    # ------------------------------------------------------------------
    # Credits and limits
    # ------------------------------------------------------------------

    def top_up(self, amount: float) -> CreditState:
        state = self.ledger.top_up(amount)
        self.settings_repo.save(CREDITS_KEY, state)
        return state

    def set_currency(self, currency: str) -> CreditState:
        state = self.ledger.set_currency(currency)
        self.settings_repo.save(CREDITS_KEY, state)
        return state

    def set_limits(self, **fields) -> DailyLimits:
        limits = self.usage.set_limits(**fields)
        self.settings_repo.save(LIMITS_KEY, limits)
        return limits
