import pytest

from storyweaver.errors import ExtensionUnavailable, InvalidRequest, SessionNotFound
from storyweaver.models import (
    DEFAULT_CAMERA_MOVEMENT,
    Character,
    GenerationParams,
    ImageResult,
    SceneStatus,
    VideoClip,
    VideoStatus,
    VoiceoverMode,
)
from storyweaver.store import (
    SceneRef,
    SessionStore,
    detect_speaker,
    shift_after_insert,
    shift_after_removal,
)


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


def _complete(store: SessionStore, session_id: int, count: int) -> None:
    for i in range(count):
        ref = store.scene_ref(session_id, i)
        store.begin_scene_generation(ref)
        store.complete_scene_generation(ref, ImageResult(image=f"img{i}".encode()))


def test_create_session_adds_pending_scenes(store) -> None:
    session_id = store.create_session("A fox", 3, scripts=["Ada: Hello"])

    session = store.get(session_id)
    assert store.state.active_session_index == 0
    assert [s.status for s in session.scenes] == [SceneStatus.PENDING] * 3
    assert len(session.video_states) == 3
    assert session.scenes[0].video.speaker == "Ada"
    ids = [s.id for s in session.scenes]
    assert ids == sorted(set(ids))
    assert session_id not in ids


def test_create_session_rejects_empty_batch(store) -> None:
    with pytest.raises(InvalidRequest):
        store.create_session("A fox", 0)
    assert store.sessions == ()


def test_unknown_session_raises(store) -> None:
    with pytest.raises(SessionNotFound):
        store.get(42)
    session_id = store.create_session("A fox", 1)
    with pytest.raises(SessionNotFound):
        store.scene_ref(session_id, 5)


def test_result_lands_on_reserved_scene_after_splice(store) -> None:
    session_id = store.create_session("A fox", 2)
    _complete(store, session_id, 1)
    pending = store.scene_ref(session_id, 1)
    store.begin_scene_generation(pending)

    store.insert_derived_scenes(
        session_id,
        0,
        [ImageResult(image=b"wide", angle_name="Wide Shot"), ImageResult(image=b"close")],
    )
    store.complete_scene_generation(pending, ImageResult(image=b"late"))

    scenes = store.get(session_id).scenes
    assert [s.image for s in scenes] == [b"img0", b"wide", b"close", b"late"]
    assert scenes[3].id == pending.scene_id
    assert store.index_of(pending) == 3


def test_result_for_deleted_session_is_dropped(store) -> None:
    session_id = store.create_session("A fox", 1)
    ref = store.scene_ref(session_id, 0)
    store.delete_session(session_id)

    assert not store.complete_scene_generation(ref, ImageResult(image=b"img"))
    assert store.scene(ref) is None


def test_derived_scenes_inherit_narration(store) -> None:
    session_id = store.create_session("A fox", 1)
    _complete(store, session_id, 1)
    parent = store.scene_ref(session_id, 0)
    store.set_script(parent, "Ada: Run!", [Character(id=1, name="Ada")])
    store.set_voiceover(parent, VoiceoverMode.UPLOADED, b"voice")
    store.set_camera_movement(parent, "Pan Left")

    refs = store.insert_derived_scenes(
        session_id, 0, [ImageResult(image=b"wide", angle_name="Wide Shot")],
    )

    derived = store.scene(refs[0])
    assert derived.angle_of == 0
    assert derived.angle_name == "Wide Shot"
    assert derived.status == SceneStatus.COMPLETE
    assert derived.video.script == "Ada: Run!"
    assert derived.video.speaker == "Ada"
    assert derived.video.voiceover_mode == VoiceoverMode.UPLOADED
    assert derived.video.voiceover_audio == b"voice"
    assert derived.video.camera_movement == DEFAULT_CAMERA_MOVEMENT
    assert derived.video.clips == ()


def test_splice_remaps_later_angle_references(store) -> None:
    session_id = store.create_session("A fox", 2)
    _complete(store, session_id, 2)
    store.insert_derived_scenes(session_id, 1, [ImageResult(image=b"b-wide")])

    store.insert_derived_scenes(session_id, 0, [ImageResult(image=b"a1"), ImageResult(image=b"a2")])

    scenes = store.get(session_id).scenes
    assert [s.image for s in scenes] == [b"img0", b"a1", b"a2", b"img1", b"b-wide"]
    assert [s.angle_of for s in scenes] == [None, 0, 0, None, 3]


def test_two_angles_after_middle_scene(store) -> None:
    session_id = store.create_session("A fox", 3)
    _complete(store, session_id, 3)
    last = store.scene_ref(session_id, 2)
    active_video = 2

    refs = store.insert_derived_scenes(
        session_id, 1, [ImageResult(image=b"a"), ImageResult(image=b"b")],
    )
    active_video = shift_after_insert(active_video, 1, len(refs))

    session = store.get(session_id)
    assert len(session.scenes) == len(session.video_states) == 5
    assert store.index_of(last) == 4
    assert active_video == 4
    assert [s.angle_of for s in session.scenes] == [None, None, 1, 1, None]


def test_failed_derivative_is_recorded_as_error(store) -> None:
    session_id = store.create_session("A fox", 1)
    refs = store.insert_derived_scenes(session_id, 0, [ImageResult(error="Blocked: SAFETY")])

    scene = store.scene(refs[0])
    assert scene.status == SceneStatus.ERROR
    assert scene.error == "Blocked: SAFETY"


def test_remove_derivative_splices_and_reindexes(store) -> None:
    session_id = store.create_session("A fox", 2)
    _complete(store, session_id, 2)
    store.insert_derived_scenes(session_id, 0, [ImageResult(image=b"a1")])
    store.insert_derived_scenes(session_id, 2, [ImageResult(image=b"b1")])

    assert not store.remove_scene(session_id, 0, derivative_only=True)
    assert store.remove_scene(session_id, 1, derivative_only=True)

    session = store.get(session_id)
    assert len(session.scenes) == len(session.video_states) == 3
    assert [s.image for s in session.scenes] == [b"img0", b"img1", b"b1"]
    assert session.scenes[2].angle_of == 1


def test_removing_an_angle_reparents_its_own_angles(store) -> None:
    session_id = store.create_session("A fox", 1)
    _complete(store, session_id, 1)
    store.insert_derived_scenes(session_id, 0, [ImageResult(image=b"a1"), ImageResult(image=b"a2")])
    store.insert_derived_scenes(session_id, 2, [ImageResult(image=b"a2-close")])
    assert [s.angle_of for s in store.get(session_id).scenes] == [None, 0, 0, 2]

    assert store.remove_scene(session_id, 2, derivative_only=True)

    scenes = store.get(session_id).scenes
    assert [s.image for s in scenes] == [b"img0", b"a1", b"a2-close"]
    assert [s.angle_of for s in scenes] == [None, 0, 0]


def test_removing_last_visible_scene_closes_session(store) -> None:
    session_id = store.create_session("A fox", 2)

    store.remove_scene(session_id, 0)
    session = store.get(session_id)
    assert len(session.scenes) == 2
    assert session.scenes[0].hidden
    assert not session.closed

    store.remove_scene(session_id, 1)
    assert store.get(session_id).closed

    store.restore_scene(session_id, 1)
    store.reopen_session(session_id)
    assert not store.get(session_id).closed
    assert len(store.get(session_id).visible_scenes) == 1


def test_reorder_moves_video_state_with_scene(store) -> None:
    session_id = store.create_session("A fox", 3)
    _complete(store, session_id, 3)
    store.set_script(store.scene_ref(session_id, 0), "First line")
    store.insert_derived_scenes(session_id, 2, [ImageResult(image=b"c1")])

    store.reorder_scenes(session_id, 0, 2)

    scenes = store.get(session_id).scenes
    assert [s.image for s in scenes] == [b"img1", b"img2", b"img0", b"c1"]
    assert scenes[2].video.script == "First line"
    assert scenes[3].angle_of == 1


def test_clip_chain_through_store(store) -> None:
    session_id = store.create_session("A fox", 1)
    ref = store.scene_ref(session_id, 0)

    with pytest.raises(ExtensionUnavailable):
        store.extension_handle(ref)

    store.begin_video(ref)
    store.append_clip(ref, VideoClip(video_ref="v1", continuation_handle="h1"))
    store.append_clip(ref, VideoClip(video_ref="v2", continuation_handle="h2"))
    store.navigate_clip(ref, -1)
    assert store.extension_handle(ref) == "h2"

    store.remove_last_clip(ref)
    video = store.scene(ref).video
    assert video.status == VideoStatus.SUCCESS
    assert video.current_clip_index == 0
    assert store.extension_handle(ref) == "h1"


def test_stop_in_flight_leaves_pending_scenes(store) -> None:
    session_id = store.create_session("A fox", 3)
    _complete(store, session_id, 1)
    store.begin_scene_generation(store.scene_ref(session_id, 1))
    first = store.scene_ref(session_id, 0)
    store.begin_video(first)
    store.set_generating_angles(first, True)

    touched = store.stop_in_flight()

    scenes = store.get(session_id).scenes
    assert touched == 2
    assert scenes[0].status == SceneStatus.COMPLETE
    assert scenes[0].image == b"img0"
    assert not scenes[0].generating_angles
    assert scenes[0].video.status == VideoStatus.ERROR
    assert scenes[0].video.error == "Stopped"
    assert scenes[1].status == SceneStatus.ERROR
    assert scenes[1].error == "Stopped"
    assert scenes[2].status == SceneStatus.PENDING
    assert store.stop_in_flight() == 0


def test_closed_session_rejects_placeholders(store) -> None:
    session_id = store.create_session("A fox", 1)
    store.close_session(session_id)
    with pytest.raises(InvalidRequest, match="closed"):
        store.append_placeholders(session_id, ["more"])
    assert len(store.get(session_id).scenes) == 1


def test_delete_session_keeps_active_index_valid(store) -> None:
    first = store.create_session("one", 1)
    store.create_session("two", 1)
    third = store.create_session("three", 1)
    assert store.state.active_session_index == 2

    store.delete_session(first)
    assert store.state.active_session.id == third

    store.delete_session(third)
    assert store.state.active_session_index == 0
    assert not store.delete_session(12345)


def test_subscribers_see_every_new_state(store) -> None:
    seen = []
    unsubscribe = store.subscribe(seen.append)
    session_id = store.create_session("A fox", 1)
    store.close_session(session_id)
    store.close_session(session_id)
    unsubscribe()
    store.reopen_session(session_id)

    assert len(seen) == 2
    assert seen[-1].sessions[0].closed


def test_loaded_ids_are_never_reused() -> None:
    source = SessionStore()
    session_id = source.create_session("A fox", 2, GenerationParams())
    store = SessionStore(source.sessions)

    new_id = store.create_session("Another", 1)

    assert new_id > max(s.id for s in source.get(session_id).scenes)
    assert SceneRef(session_id, source.get(session_id).scenes[0].id) == store.scene_ref(session_id, 0)


def test_detect_speaker() -> None:
    cast = [Character(id=1, name="Ada")]
    assert detect_speaker("ada: Hello there", cast) == "Ada"
    assert detect_speaker("Bob: Hi", cast) == "Bob"
    assert detect_speaker("Once upon a time", cast) == "Narrator"
    assert detect_speaker("Line one\nTwo: three", cast) == "Narrator"


def test_pointer_shifts() -> None:
    assert shift_after_insert(3, 1, 2) == 5
    assert shift_after_insert(1, 1, 2) == 1
    assert shift_after_insert(-1, 1, 2) == -1
    assert shift_after_removal(3, 1) == 2
    assert shift_after_removal(1, 1) == -1
    assert shift_after_removal(0, 1) == 0
