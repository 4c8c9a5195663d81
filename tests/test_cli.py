from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from storyweaver.cli import _get_studio, app
from storyweaver.models import ImageResult, VideoClip
from storyweaver.service import Storybook, StorybookScene

runner = CliRunner()


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("STORYWEAVER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("STORYWEAVER_BATCH_DELAY", "0")
    monkeypatch.setenv("GEMINI_API_KEY", "key")
    return tmp_path / "data"


@pytest.fixture
def mock_service():
    with patch("storyweaver.cli.GeminiService") as mock:
        instance = mock.return_value
        instance.draft_scene_prompts = AsyncMock(
            side_effect=lambda prompt, count, *args, **kwargs: [prompt] * count,
        )
        instance.generate_image = AsyncMock(return_value=ImageResult(image=b"img"))
        instance.generate_video = AsyncMock(
            return_value=VideoClip(video_ref="https://videos/1", continuation_handle="h1"),
        )
        yield mock


def test_history_empty() -> None:
    result = runner.invoke(app, ["history"])
    assert result.exit_code == 0
    assert "No sessions yet." in result.stdout


def test_generate_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY")
    result = runner.invoke(app, ["generate", "A fox"])
    assert result.exit_code == 1
    assert "GEMINI_API_KEY not found" in result.stdout


def test_generate_and_list(mock_service, tmp_path) -> None:
    result = runner.invoke(
        app,
        ["generate", "A fox", "--count", "2", "--output-dir", str(tmp_path / "out")],
    )

    assert result.exit_code == 0
    assert "Generation Finished" in result.stdout
    assert "2/2 complete" in result.stdout
    assert (tmp_path / "out" / "scene_000.png").read_bytes() == b"img"
    mock_service.assert_called_once()

    history = runner.invoke(app, ["history"])
    assert history.exit_code == 0
    assert "A fox" in history.stdout


def test_show_unknown_session() -> None:
    result = runner.invoke(app, ["show", "12345"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_video_needs_credit_then_extends(mock_service) -> None:
    runner.invoke(app, ["generate", "A fox"])
    session_id = _only_session_id()

    result = runner.invoke(app, ["video", str(session_id), "0"])
    assert result.exit_code == 1
    assert "Insufficient credit" in result.stdout

    runner.invoke(app, ["credits", "--top-up", "5"])
    result = runner.invoke(app, ["video", str(session_id), "0", "--script", "Ada: Hello"])
    assert result.exit_code == 0
    assert "Clip Ready" in result.stdout

    result = runner.invoke(app, ["extend", str(session_id), "0"])
    assert result.exit_code == 0
    assert mock_service.return_value.generate_video.call_args.kwargs["continuation_handle"] == "h1"


def test_extend_without_clip(mock_service) -> None:
    runner.invoke(app, ["generate", "A fox"])
    runner.invoke(app, ["credits", "--top-up", "5"])

    result = runner.invoke(app, ["extend", str(_only_session_id()), "0"])

    assert result.exit_code == 1
    assert "Could not find a previous clip to extend." in result.stdout
    mock_service.return_value.generate_video.assert_not_called()


def test_credits() -> None:
    result = runner.invoke(app, ["credits", "--top-up", "5"])
    assert result.exit_code == 0
    assert "5.00 USD" in result.stdout

    result = runner.invoke(app, ["credits", "--currency", "EUR"])
    assert "4.60 EUR" in result.stdout

    result = runner.invoke(app, ["credits", "--currency", "XYZ"])
    assert result.exit_code == 1
    assert "Unknown currency" in result.stdout


def test_usage_limits() -> None:
    result = runner.invoke(app, ["usage", "--enable", "--max-images", "3"])
    assert result.exit_code == 0
    assert "0/3" in result.stdout
    assert "on" in result.stdout


def test_bookmark_and_restore(mock_service) -> None:
    runner.invoke(app, ["generate", "A fox"])
    session_id = _only_session_id()

    result = runner.invoke(app, ["bookmark", str(session_id), "0"])
    assert result.exit_code == 0
    assert "Saved." in result.stdout

    listed = runner.invoke(app, ["bookmarks"])
    assert "Saved Items" in listed.stdout

    item_id = _studio().bookmarks[0].id
    restored = runner.invoke(app, ["bookmarks", "--restore", item_id])
    assert restored.exit_code == 0
    assert "Restored as session" in restored.stdout
    assert len(_studio().store.sessions) == 2


def test_edit_then_delete(mock_service) -> None:
    mock_service.return_value.edit_image = AsyncMock(return_value=ImageResult(image=b"edited"))
    runner.invoke(app, ["generate", "A fox"])
    session_id = _only_session_id()

    result = runner.invoke(app, ["edit", str(session_id), "0", "Add a hat"])
    assert result.exit_code == 0
    assert "Scene 0 updated." in result.stdout
    assert _studio().store.get(session_id).scenes[0].image == b"edited"

    result = runner.invoke(app, ["delete", str(session_id)])
    assert result.exit_code == 0
    assert _studio().store.sessions == ()
    assert runner.invoke(app, ["delete", str(session_id)]).exit_code == 1


def test_character_without_service() -> None:
    result = runner.invoke(app, ["character", "Ada", "--description", "red scarf"])

    assert result.exit_code == 0
    assert "red scarf" in result.stdout
    assert [c.name for c in _studio().characters] == ["Ada"]


def _studio():
    return _get_studio(needs_service=False)


def _only_session_id() -> int:
    sessions = _studio().store.sessions
    assert len(sessions) == 1
    return sessions[0].id


def test_video_rejects_unknown_scene(mock_service) -> None:
    runner.invoke(app, ["generate", "A fox"])
    session_id = _only_session_id()

    for index in ("5", "-1"):
        result = runner.invoke(app, ["video", "--", str(session_id), index])
        assert result.exit_code == 1
        assert f"has no scene {index}" in result.stdout
    mock_service.return_value.generate_video.assert_not_called()


def test_character_image_mime_type(tmp_path) -> None:
    photo = tmp_path / "ada.jpg"
    photo.write_bytes(b"jpeg")

    result = runner.invoke(app, ["character", "Ada", "--image", str(photo)])

    assert result.exit_code == 0
    stored = _studio().characters[0]
    assert stored.image == b"jpeg"
    assert stored.image_mime_type == "image/jpeg"


def test_character_visual(mock_service, tmp_path) -> None:
    runner.invoke(app, ["character", "Ada", "--description", "red scarf"])
    mock_service.return_value.generate_character_visual = AsyncMock(
        return_value=ImageResult(image=b"sheet"),
    )
    output = tmp_path / "ada.png"

    result = runner.invoke(app, ["character-visual", "1", "--output", str(output)])

    assert result.exit_code == 0
    assert "Ada (#1)" in result.stdout
    assert output.read_bytes() == b"sheet"
    assert _studio().characters[0].image == b"sheet"


def test_storybook_to_storyboard(mock_service) -> None:
    mock_service.return_value.draft_storybook = AsyncMock(
        return_value=Storybook(
            story_narrative="A fox finds a cabin.",
            scenes=[
                StorybookScene(image_description="A fox in snow", narration="It was cold."),
                StorybookScene(image_description="A cabin door", narration='Fox: "Hello?"'),
            ],
        ),
    )

    result = runner.invoke(app, ["storybook", "A fox", "--title", "The Cabin", "--generate"])

    assert result.exit_code == 0
    assert "A fox finds a cabin." in result.stdout
    assert "Generation Finished" in result.stdout
    assert "2/2 complete" in result.stdout
    session = _studio().store.get(_only_session_id())
    assert session.title == "The Cabin"
    assert [s.video.script for s in session.scenes] == ["It was cold.", 'Fox: "Hello?"']


def test_storybook_needs_one_source(tmp_path) -> None:
    story = tmp_path / "story.txt"
    story.write_text("Once upon a time.")

    result = runner.invoke(app, ["storybook", "A fox", "--narrative", str(story)])
    assert result.exit_code == 1
    assert "Give either a story idea or --narrative." in result.stdout

    assert runner.invoke(app, ["storybook"]).exit_code == 1
