"""Service for interacting with the Google Gemini API."""

import asyncio
import hashlib
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from google import genai
from google.genai import types
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .cancellation import CancellationToken
from .errors import ServiceFailure, UserCancelled, parse_error_message
from .models import Character, GenerationParams, ImageResult, Scene, VideoClip

logger = logging.getLogger(__name__)

Progress = Callable[[str], None]

STYLE_INSTRUCTIONS = {
    "Nigerian Cartoon": (
        "A vibrant 2D cartoon style inspired by Nigerian art. Characters are drawn "
        "as caricatures with expressive faces and large heads, wearing colorful "
        "traditional Nigerian attire like agbada, kaftans, or gele. Bold, clean "
        "outlines and a simple, flat color palette. This is NOT a realistic or 3D style."
    ),
    "Cartoon (Big Head)": (
        "A funny 2D vector art cartoon. Characters have a very large head, a tiny "
        "waist, and small legs. Bold outlines and flat colors, no 3D effects, "
        "shadows, or gradients."
    ),
    "Realistic Photo": (
        "A hyper-realistic, cinematic photograph. High fidelity, realistic skin "
        "textures, natural lighting, true-to-life proportions. NOT a drawing, "
        "NOT a painting, NOT a 3D render."
    ),
    "3D Render": (
        "A high-quality 3D render like modern animated feature films. Smooth "
        "textures, volumetric lighting, slightly stylized proportions."
    ),
    "Anime": "Japanese Anime style. Cel-shaded, vibrant colors, expressive eyes.",
    "Illustration": "A modern digital illustration. Clean lines, artistic shading.",
    "Oil Painting": "Classic oil painting style. Visible brush strokes, canvas texture.",
    "Pixel Art": "Retro pixel art style. Blocky pixels, limited color palette.",
    "Watercolor": "Watercolor painting style. Soft edges, bleed effects, paper texture.",
    "Cyberpunk": "Cyberpunk aesthetic. Neon lights, high contrast, gritty urban future.",
}

CAMERA_ANGLES = {
    "close_up": ("Close Shot", "Focuses tightly on a character's face."),
    "medium": ("Medium Shot", "Shows a character from the waist up."),
    "full": ("Full Shot", "Captures the entire character from head to toe."),
    "wide": ("Wide Shot", "Establishes the entire scene and location."),
    "ots": ("Over-the-Shoulder", "Looks over one character at another."),
    "pov": ("Point of View (POV)", "Shows the scene from a character's eyes."),
    "high_angle": ("High-Angle", "Looks down on the subject."),
    "low_angle": ("Low-Angle", "Looks up at the subject."),
    "from_behind": ("From the Back", "Frames the scene from behind the character."),
}

CAMERA_MOVEMENTS = {
    "Static Hold": "The camera remains completely static, holding a fixed shot on the scene.",
    "Drone Rise Tilt-Up": (
        "The camera starts low and ascends smoothly while tilting upward, "
        "creating an epic aerial reveal of the scene."
    ),
    "Dolly Back (Pull-Out)": (
        "The camera moves straight backward, smoothly revealing more of the "
        "surrounding environment."
    ),
    "Pan Left": "The camera moves smoothly and horizontally from right to left.",
    "Pan Right": "The camera moves smoothly and horizontally from left to right.",
    "Orbit Around Subject": "The camera smoothly circles around the main subject.",
    "Crane Down": "The camera moves vertically downward, as if on a crane.",
    "Crane Up": "The camera moves vertically upward, as if on a crane.",
    "Tracking Shot (Follow)": "The camera follows the subject's motion smoothly.",
    "Zoom In (Focus In)": "The lens smoothly zooms in on the main subject.",
    "Zoom Out (Reveal)": "The lens smoothly zooms out to reveal the setting.",
}

_RETRYABLE_MARKERS = ("503", "429", "500", "overloaded", "internal server error")


def style_instructions(style: str) -> str:
    return STYLE_INSTRUCTIONS.get(style, f"In the style of {style}.")


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, UserCancelled):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def _mentioned(characters: Sequence[Character], text: str) -> list[Character]:
    lowered = text.lower()
    return [c for c in characters if c.name and c.name.lower() in lowered]


class RetryConfig(BaseModel):
    """Backoff for transient service errors."""

    attempts: int = 3
    min_wait: float = 30
    max_wait: float = 120


class ScenePrompts(BaseModel):
    """Structured response for drafted scene prompts."""

    prompts: list[str]


class CharacterDescription(BaseModel):
    """Structured response for character analysis."""

    description: str = ""
    detected_style: str = Field("", alias="detectedStyle")

    model_config = {"populate_by_name": True}


class StorybookScene(BaseModel):
    """One storyboard beat: a still to draw and the script spoken over it."""

    image_description: str = ""
    narration: str = ""


class Storybook(BaseModel):
    """Structured response for a drafted story."""

    story_narrative: str = ""
    scenes: list[StorybookScene] = []


_STORYBOARD_RULES = (
    "image_description describes the STATIC picture only: location, lighting, "
    "weather, costume and initial pose. No actions that happen during the scene.\n"
    "narration is the script: what happens, written as short sentences"
)


class GeminiService:
    """Service to interact with Google Gemini API."""

    def __init__(
        self,
        api_key: str,
        text_model: str = "gemini-3-pro-preview",
        video_model: str = "veo-2.0-generate-preview",
        tts_model: str = "gemini-2.5-flash-preview-tts",
        media_dir: Path | None = None,
        retry: RetryConfig | None = None,
        poll_interval: float = 5.0,
    ) -> None:
        """Initialize the service with an API key."""
        if not api_key:
            msg = (
                "API Key is missing. "
                "Set GEMINI_API_KEY env var or pass it as an argument."
            )
            raise ValueError(msg)
        self.client = genai.Client(api_key=api_key)
        self.text_model = text_model
        self.video_model = video_model
        self.tts_model = tts_model
        self.media_dir = media_dir or Path(".storyweaver") / "media"
        self.retry = retry or RetryConfig()
        self.poll_interval = poll_interval

    async def _call(
        self,
        func,
        token: CancellationToken | None = None,
        on_retry: Progress | None = None,
    ):
        """Run ``func`` with retries on transient errors, honouring ``token``."""

        def _before_sleep(state) -> None:
            if on_retry:
                on_retry(
                    f"Model is busy. Retrying (attempt {state.attempt_number}/"
                    f"{self.retry.attempts})...",
                )

        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.retry.attempts),
            wait=wait_exponential(
                multiplier=15,
                min=self.retry.min_wait,
                max=self.retry.max_wait,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_before_sleep if on_retry else before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retryer:
            with attempt:
                if token is not None:
                    token.raise_if_cancelled()
                try:
                    return await func()
                except Exception:
                    if token is not None:
                        token.raise_if_cancelled()
                    raise
        return None

    @staticmethod
    def _first_inline(response) -> types.Blob | None:
        candidates = response.candidates or []
        if not candidates or not candidates[0].content:
            return None
        for part in candidates[0].content.parts or []:
            if part.inline_data and part.inline_data.data:
                return part.inline_data
        return None

    @staticmethod
    def _blocked_reason(response) -> str | None:
        candidates = response.candidates or []
        if not candidates:
            return None
        reason = candidates[0].finish_reason
        if reason and str(getattr(reason, "value", reason)) != "STOP":
            return str(getattr(reason, "value", reason))
        return None

    def _save_media(self, data: bytes, name: str) -> str:
        output_path = self.media_dir / name
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("wb") as f:
            f.write(data)
        return str(output_path)

    async def draft_scene_prompts(
        self,
        prompt: str,
        count: int,
        genre: str,
        characters: Sequence[Character] = (),
        token: CancellationToken | None = None,
    ) -> list[str]:
        """Expand one idea into ``count`` sequential scene prompts."""
        if count <= 1:
            return [prompt]
        cast = "\n".join(f"{c.name}: {c.description or ''}" for c in characters)
        instruction = (
            f'Create {count} sequential image prompts based on: "{prompt}".\n'
            f"Genre: {genre}.\nCharacters: {cast}.\n"
            "Rules: Safe for work, visually descriptive, no violence."
        )
        response = await self._call(
            lambda: self.client.aio.models.generate_content(
                model=self.text_model,
                contents=[types.Content(parts=[types.Part.from_text(text=instruction)])],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=ScenePrompts,
                ),
            ),
            token,
        )
        try:
            if getattr(response, "parsed", None):
                prompts = response.parsed.prompts
            else:
                prompts = ScenePrompts.model_validate_json(response.text).prompts
        except (ValueError, TypeError, AttributeError):
            logger.warning("Could not parse drafted prompts; reusing the base prompt")
            prompts = []
        prompts = [p for p in prompts if p][:count]
        return prompts + [prompt] * (count - len(prompts))

    @staticmethod
    def _storyboard_rules(dialogue: bool) -> str:
        if dialogue:
            return _STORYBOARD_RULES + ', plus dialogue written as Speaker: "Line".'
        return _STORYBOARD_RULES + "."

    async def _storybook_request(self, instruction: str, token: CancellationToken | None):
        return await self._call(
            lambda: self.client.aio.models.generate_content(
                model=self.text_model,
                contents=[types.Content(parts=[types.Part.from_text(text=instruction)])],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=Storybook,
                ),
            ),
            token,
        )

    @staticmethod
    def _parse_storybook(response) -> Storybook:
        parsed = getattr(response, "parsed", None)
        if isinstance(parsed, Storybook):
            return parsed
        return Storybook.model_validate_json(response.text or "{}")

    async def draft_storybook(
        self,
        idea: str,
        title: str = "",
        characters: Sequence[Character] = (),
        dialogue: bool = True,
        token: CancellationToken | None = None,
    ) -> Storybook:
        """Write a story from ``idea`` and split it into drawable scenes.

        Raises:
            ServiceFailure: If the reply could not be parsed.

        """
        cast = ", ".join(c.name for c in characters if c.name)
        instruction = "You are a professional screenwriter and storyboard artist.\n"
        instruction += f'Create a structured story based on this idea: "{idea}".\n'
        if title:
            instruction += f"Title: {title}\n"
        if cast:
            instruction += f"Characters: {cast}\n"
        instruction += (
            "story_narrative is a cohesive summary of the story. "
            "Break the story into visual scenes.\n"
            f"{self._storyboard_rules(dialogue)}"
        )
        response = await self._storybook_request(instruction, token)
        try:
            return self._parse_storybook(response)
        except ValueError as e:
            msg = "Failed to parse story structure."
            raise ServiceFailure(msg) from e

    async def scenes_from_narrative(
        self,
        narrative: str,
        characters: Sequence[Character] = (),
        dialogue: bool = True,
        token: CancellationToken | None = None,
    ) -> list[StorybookScene]:
        """Split an existing narrative into storyboard scenes.

        An unparseable reply yields no scenes rather than an error.
        """
        cast = ", ".join(c.name for c in characters if c.name)
        instruction = (
            "Analyze this narrative and convert it into a storyboard script.\n"
            f'Narrative: "{narrative}"\n'
            f"Characters: {cast or 'none'}\n"
            f"{self._storyboard_rules(dialogue)}"
        )
        response = await self._storybook_request(instruction, token)
        try:
            storybook = self._parse_storybook(response)
        except ValueError:
            logger.warning("Could not parse storyboard scenes from the narrative")
            return []
        return [scene for scene in storybook.scenes if scene.image_description]

    async def generate_image(
        self,
        prompt: str,
        params: GenerationParams,
        reference: tuple[bytes, str] | None = None,
        token: CancellationToken | None = None,
        model: str | None = None,
    ) -> ImageResult:
        """Generate one scene image.

        Service errors are returned on the result; only cancellation raises.

        Raises:
            UserCancelled: If ``token`` was invalidated.

        """
        model = model or params.image_model
        cast = ". ".join(
            f"{c.name} is {c.description}"
            for c in _mentioned(params.characters, prompt)
            if c.description
        )
        full_prompt = f"{style_instructions(params.style)} {params.genre} Scene. {cast} {prompt}"
        try:
            if model.startswith("imagen"):
                response = await self._call(
                    lambda: self.client.aio.models.generate_images(
                        model=model,
                        prompt=full_prompt,
                        config=types.GenerateImagesConfig(
                            number_of_images=1,
                            aspect_ratio=params.aspect_ratio,
                        ),
                    ),
                    token,
                )
                images = response.generated_images or []
                if images and images[0].image and images[0].image.image_bytes:
                    return ImageResult(image=images[0].image.image_bytes, prompt=prompt)
                return ImageResult(error="No image returned.", prompt=prompt)

            parts = []
            if reference is not None:
                parts.append(types.Part.from_bytes(data=reference[0], mime_type=reference[1]))
            parts.append(types.Part.from_text(text=full_prompt))
            response = await self._call(
                lambda: self.client.aio.models.generate_content(
                    model=model,
                    contents=[types.Content(parts=parts)],
                    config=types.GenerateContentConfig(
                        response_modalities=["IMAGE"],
                        image_config=types.ImageConfig(aspect_ratio=params.aspect_ratio),
                    ),
                ),
                token,
            )
        except UserCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            return ImageResult(error=parse_error_message(e), prompt=prompt)

        blocked = self._blocked_reason(response)
        if blocked:
            return ImageResult(error=f"Blocked: {blocked}", prompt=prompt)
        blob = self._first_inline(response)
        if blob is None:
            return ImageResult(error="No image returned.", prompt=prompt)
        return ImageResult(image=blob.data, mime_type=blob.mime_type or "image/png", prompt=prompt)

    async def edit_image(
        self,
        image: bytes,
        edit_prompt: str,
        params: GenerationParams,
        mask_overlay: bytes | None = None,
        reference_image: tuple[bytes, str] | None = None,
        token: CancellationToken | None = None,
    ) -> ImageResult:
        """Apply a text and/or painted-mask edit to ``image``."""
        if mask_overlay is not None:
            text = (
                "Edit this image based on the painted mask.\n"
                f'Green areas: Generate new content described as: "{edit_prompt}".\n'
                "Red areas: Remove/Inpaint content.\n"
                f"{edit_prompt}"
            )
        else:
            text = f"Edit instruction: {edit_prompt}"
        involved = _mentioned(params.characters, edit_prompt)
        context = ". ".join(f"Reference character {c.name}: {c.description}" for c in involved)
        if context:
            text += f"\nMaintain appearance of: {context}"

        parts = [types.Part.from_bytes(data=image, mime_type="image/png")]
        if mask_overlay is not None:
            parts.append(types.Part.from_bytes(data=mask_overlay, mime_type="image/png"))
        parts.append(types.Part.from_text(text=text))
        if reference_image is not None:
            parts.append(types.Part.from_bytes(data=reference_image[0], mime_type=reference_image[1]))
        for character in involved:
            if character.image and character.image_mime_type:
                parts.append(
                    types.Part.from_bytes(data=character.image, mime_type=character.image_mime_type),
                )

        model = params.image_model if "gemini" in params.image_model else "gemini-3-pro-image-preview"
        try:
            response = await self._call(
                lambda: self.client.aio.models.generate_content(
                    model=model,
                    contents=[types.Content(parts=parts)],
                    config=types.GenerateContentConfig(
                        response_modalities=["IMAGE"],
                        image_config=types.ImageConfig(aspect_ratio=params.aspect_ratio),
                    ),
                ),
                token,
            )
        except UserCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            return ImageResult(error=parse_error_message(e))

        blob = self._first_inline(response)
        if blob is None:
            return ImageResult(error="No image returned.")
        return ImageResult(image=blob.data, mime_type=blob.mime_type or "image/png")

    async def generate_camera_angles(
        self,
        scene: Scene,
        angles: Sequence[str],
        params: GenerationParams,
        focus_subject: str | None = None,
        on_progress: Progress | None = None,
        token: CancellationToken | None = None,
    ) -> list[ImageResult]:
        """Render ``scene`` again from each requested camera angle."""
        results = []
        reference = (scene.image, scene.mime_type) if scene.image else None
        for key in angles:
            if key not in CAMERA_ANGLES:
                logger.warning("Unknown camera angle %r skipped", key)
                continue
            name, description = CAMERA_ANGLES[key]
            if on_progress:
                on_progress(f"Generating {name}...")
            focus = f" Focus on {focus_subject}." if focus_subject else ""
            prompt = f"{name} ({description}).{focus} {scene.prompt}"
            result = await self.generate_image(
                prompt,
                params,
                reference=reference,
                token=token,
                model="gemini-3-pro-image-preview",
            )
            results.append(result.model_copy(update={"angle_name": name}))
        return results

    async def generate_character_visual(
        self,
        name: str,
        description: str,
        style: str,
        reference: tuple[bytes, str] | None = None,
        token: CancellationToken | None = None,
        model: str = "gemini-3-pro-image-preview",
    ) -> ImageResult:
        """Draw a full-body design sheet for a character.

        Raises:
            UserCancelled: If ``token`` was invalidated.

        """
        text = (
            "Create a high-fidelity character design sheet.\n"
            f"Name: {name}\nDescription: {description}\nStyle: {style_instructions(style)}\n"
            "Full body, head to toe, nothing cropped. Pure white background. "
            "If a reference image is provided, match its face and clothing exactly. "
            "Safe for work."
        )
        parts = []
        if reference is not None:
            parts.append(types.Part.from_bytes(data=reference[0], mime_type=reference[1]))
        parts.append(types.Part.from_text(text=text))
        try:
            response = await self._call(
                lambda: self.client.aio.models.generate_content(
                    model=model,
                    contents=[types.Content(parts=parts)],
                    config=types.GenerateContentConfig(
                        response_modalities=["IMAGE"],
                        image_config=types.ImageConfig(aspect_ratio="3:4"),
                    ),
                ),
                token,
            )
        except UserCancelled:
            raise
        except Exception as e:  # noqa: BLE001
            return ImageResult(error=parse_error_message(e), prompt=text)

        blocked = self._blocked_reason(response)
        if blocked:
            return ImageResult(error=f"Generation blocked: {blocked}", prompt=text)
        blob = self._first_inline(response)
        if blob is None:
            return ImageResult(error="No image data returned.", prompt=text)
        return ImageResult(image=blob.data, mime_type=blob.mime_type or "image/png", prompt=text)

    async def synthesize_speech(
        self,
        text: str,
        voice: str = "Kore",
        expression: str = "Storytelling",
        token: CancellationToken | None = None,
    ) -> bytes | None:
        prompt = f'Read the following text with a {expression} tone.\nText: "{text}"'
        try:
            response = await self._call(
                lambda: self.client.aio.models.generate_content(
                    model=self.tts_model,
                    contents=[types.Content(parts=[types.Part.from_text(text=prompt)])],
                    config=types.GenerateContentConfig(
                        response_modalities=["AUDIO"],
                        speech_config=types.SpeechConfig(
                            voice_config=types.VoiceConfig(
                                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice),
                            ),
                        ),
                    ),
                ),
                token,
            )
        except UserCancelled:
            raise
        except Exception:
            logger.exception("Speech synthesis failed")
            return None
        blob = self._first_inline(response)
        return blob.data if blob else None

    async def generate_video(
        self,
        scene: Scene,
        script: str,
        params: GenerationParams,
        camera_movement: str,
        continuation_handle: str | None = None,
        voiceover: bytes | None = None,
        lip_sync: bool = False,
        resolution: str = "720p",
        on_progress: Progress | None = None,
        token: CancellationToken | None = None,
    ) -> VideoClip:
        """Generate one clip from a scene image, optionally continuing a prior clip.

        Raises:
            UserCancelled: If ``token`` was invalidated while waiting.
            ServiceFailure: If the service failed or returned no video.

        """
        if not scene.image:
            msg = "No source image for video."
            raise ServiceFailure(msg)

        def progress(message: str) -> None:
            if on_progress:
                on_progress(message)

        movement = CAMERA_MOVEMENTS.get(camera_movement, camera_movement)
        prompt = f"Cinematic video. {params.style} style. {movement} {scene.prompt}."
        if lip_sync:
            prompt += " Character is speaking with natural mouth movements and expressive facial animation."

        request = {
            "model": self.video_model,
            "prompt": prompt,
            "image": types.Image(image_bytes=scene.image, mime_type=scene.mime_type),
            "config": types.GenerateVideosConfig(
                number_of_videos=1,
                resolution="1080p" if resolution == "1080p" else "720p",
                aspect_ratio="16:9" if params.aspect_ratio == "16:9" else "9:16",
            ),
        }
        if continuation_handle:
            request["video"] = types.Video(uri=continuation_handle)

        progress("Generating video...")
        try:
            operation = await self._call(
                lambda: self.client.aio.models.generate_videos(**request),
                token,
                on_retry=progress,
            )
            while not operation.done:
                if token is not None:
                    token.raise_if_cancelled()
                await asyncio.sleep(self.poll_interval)
                progress("Processing video...")
                operation = await self.client.aio.operations.get(operation)
        except UserCancelled:
            raise
        except Exception as e:
            if "safety" in str(e).lower():
                msg = (
                    "Video generation completed, but no video was returned. This may "
                    "be due to the prompt being blocked by a safety filter."
                )
                raise ServiceFailure(msg) from e
            raise ServiceFailure(parse_error_message(e)) from e

        if token is not None:
            token.raise_if_cancelled()
        videos = (operation.response.generated_videos if operation.response else None) or []
        video = videos[0].video if videos else None
        if video is None or not video.uri:
            msg = "Video generation completed, but no video was returned."
            raise ServiceFailure(msg)

        audio_ref = None
        audio = voiceover
        if audio is None and script:
            progress("Generating audio...")
            audio = await self.synthesize_speech(script, token=token)
        if audio:
            digest = hashlib.sha1(video.uri.encode()).hexdigest()[:12]
            audio_ref = self._save_media(audio, f"{scene.id}-{digest}.wav")

        return VideoClip(video_ref=video.uri, audio_ref=audio_ref, continuation_handle=video.uri)

    async def describe_character(
        self,
        image: bytes,
        mime_type: str,
        token: CancellationToken | None = None,
    ) -> CharacterDescription:
        """Describe the person in ``image`` as generator-friendly tags.

        Raises:
            ServiceFailure: If the request was blocked or unparseable.

        """
        prompt = (
            "Analyze the person in the image. Generate a concise, single-line, "
            "comma-separated list of descriptive tags for an AI image generator. "
            "Also identify the primary visual art style. The description MUST be "
            "Safe For Work and focus on visual features."
        )
        response = await self._call(
            lambda: self.client.aio.models.generate_content(
                model=self.text_model,
                contents=[
                    types.Content(
                        parts=[
                            types.Part.from_bytes(data=image, mime_type=mime_type),
                            types.Part.from_text(text=prompt),
                        ],
                    ),
                ],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=CharacterDescription,
                ),
            ),
            token,
        )
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            msg = "Safety filter triggered."
            raise ServiceFailure(msg)
        try:
            return CharacterDescription.model_validate_json(response.text or "{}")
        except ValueError as e:
            msg = "Failed to parse character description."
            raise ServiceFailure(msg) from e

    async def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str,
        token: CancellationToken | None = None,
    ) -> str:
        response = await self._call(
            lambda: self.client.aio.models.generate_content(
                model=self.text_model,
                contents=[
                    types.Content(
                        parts=[
                            types.Part.from_bytes(data=audio, mime_type=mime_type),
                            types.Part.from_text(text="Transcribe the speech."),
                        ],
                    ),
                ],
            ),
            token,
        )
        return response.text or ""
