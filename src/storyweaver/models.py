"""Pydantic data models for the StoryWeaver session store."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CAMERA_MOVEMENT = "Static Hold"
DEFAULT_SPEAKER = "Narrator"
NO_CLIP = -1


class SceneStatus(str, Enum):
    """Lifecycle of a scene image."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"


class VideoStatus(str, Enum):
    """Lifecycle of a scene's video authoring state."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class VoiceoverMode(str, Enum):
    """Where the narration audio for a clip comes from."""

    SYNTHESIZED = "synthesized"
    UPLOADED = "uploaded"


class Snapshot(BaseModel):
    """Base for immutable snapshot records."""

    model_config = ConfigDict(
        frozen=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )


class VideoClip(Snapshot):
    """One generated video segment."""

    video_ref: str
    audio_ref: str | None = None
    continuation_handle: str | None = None

    @property
    def extendable(self) -> bool:
        """Whether a follow-on clip can be requested from this one."""
        return bool(self.continuation_handle)


class VideoState(Snapshot):
    """Video authoring state for a single scene."""

    status: VideoStatus = VideoStatus.IDLE
    clips: tuple[VideoClip, ...] = ()
    current_clip_index: int = NO_CLIP
    script: str = ""
    speaker: str = DEFAULT_SPEAKER
    voiceover_mode: VoiceoverMode = VoiceoverMode.SYNTHESIZED
    voiceover_audio: bytes | None = None
    camera_movement: str = DEFAULT_CAMERA_MOVEMENT
    use_lip_sync: bool = False
    loading_message: str = ""
    error: str | None = None

    @property
    def current_clip(self) -> VideoClip | None:
        if 0 <= self.current_clip_index < len(self.clips):
            return self.clips[self.current_clip_index]
        return None


class Scene(Snapshot):
    """One visual beat: an image, its prompt and its video state."""

    id: int
    prompt: str
    image: bytes | None = None
    mime_type: str = "image/png"
    error: str | None = None
    status: SceneStatus = SceneStatus.PENDING
    hidden: bool = False
    editing: bool = False
    generating_angles: bool = False
    angle_of: int | None = Field(
        default=None,
        description="Index of the scene this one is a camera-angle derivative of",
    )
    angle_name: str | None = None
    video: VideoState = Field(default_factory=VideoState)

    @property
    def is_derivative(self) -> bool:
        return self.angle_of is not None

    @property
    def in_flight(self) -> bool:
        return self.status == SceneStatus.GENERATING


class ImageResult(Snapshot):
    """Outcome of one image request: either an image or an error message."""

    image: bytes | None = None
    error: str | None = None
    prompt: str | None = None
    angle_name: str | None = None
    mime_type: str = "image/png"

    @property
    def ok(self) -> bool:
        return self.image is not None and not self.error


class Character(Snapshot):
    """A reusable visual identity."""

    id: int
    name: str
    image: bytes | None = None
    image_mime_type: str | None = None
    description: str | None = None
    detected_style: str | None = None
    describing: bool = False


class GenerationParams(Snapshot):
    """Parameters a session was generated with."""

    aspect_ratio: str = "16:9"
    style: str = "Nigerian Cartoon"
    genre: str = "General"
    characters: tuple[Character, ...] = ()
    image_model: str = "gemini-3-pro-image-preview"


class Session(Snapshot):
    """One creative thread."""

    id: int
    title: str
    params: GenerationParams = Field(default_factory=GenerationParams)
    closed: bool = False
    scenes: tuple[Scene, ...] = ()

    @property
    def video_states(self) -> tuple[VideoState, ...]:
        """Index-aligned view of each scene's video state."""
        return tuple(scene.video for scene in self.scenes)

    @property
    def visible_scenes(self) -> tuple[Scene, ...]:
        return tuple(scene for scene in self.scenes if not scene.hidden)

    def index_of(self, scene_id: int) -> int | None:
        """Return the current index of a scene, or None if it is gone."""
        for index, scene in enumerate(self.scenes):
            if scene.id == scene_id:
                return index
        return None


class SavedItem(Snapshot):
    """A bookmarked scene together with its originating session parameters."""

    id: str
    session_id: int
    scene: Scene
    title: str
    params: GenerationParams
    created_at: float
    expires_at: float

    @staticmethod
    def make_id(session_id: int, scene_id: int) -> str:
        return f"{session_id}-{scene_id}"


class CreditState(Snapshot):
    """Balance held in the base currency plus the chosen display currency."""

    balance: float = 0.0
    currency: str = "USD"
    rate: float = 1.0


class DailyUsage(Snapshot):
    """Per-day counts of successful generations."""

    images: int = 0
    videos: int = 0
    day: str = ""


class DailyLimits(Snapshot):
    """Optional caps on daily generations."""

    max_images: int = 50
    max_videos: int = 5
    enabled: bool = False


class StudioSnapshot(Snapshot):
    """Everything a caller may observe after an update."""

    sessions: tuple[Session, ...] = ()
    active_session_index: int = -1
    active_scene_index: int = -1
    characters: tuple[Character, ...] = ()
    credits: CreditState = Field(default_factory=CreditState)
    usage: DailyUsage = Field(default_factory=DailyUsage)
    status_message: str = ""
    error: str | None = None
