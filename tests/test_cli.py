"""Tests for the CLI commands, called directly with logging switched off."""

import json
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import pytest

import exif_ai.main as m
from exif_ai import tiff
from exif_ai.config import Config, load_config
from exif_ai.errors import ConfigError
from exif_ai.models import GeneratedMetadata
from exif_ai.reader import read_metadata


QUIET = {"console_log_level": "OFF", "file_log_level": "OFF"}


class StaticBackend:
    name = "static"

    def available(self) -> bool:
        return True

    def analyze(self, image_bytes: bytes, mime_type: str) -> GeneratedMetadata:  # noqa: ARG002
        return GeneratedMetadata(title="Orange Wall", tags=["Orange", "Wall"])


@pytest.fixture
def static_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(m, "build_backends", lambda _config: [StaticBackend()])


@pytest.mark.usefixtures("static_backend")
def test_tag_json_output(
    make_jpeg: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Results are printed as JSON and the image receives the generated fields."""
    path = make_jpeg()

    m.tag([path], config_path=tmp_path / "absent.json", output_json=True, backup=False, **QUIET)

    report = json.loads(capsys.readouterr().out)
    assert report[0]["ok"] is True
    assert report[0]["backend"] == "static"
    assert report[0]["outcome"]["title"] is True
    assert read_metadata(path).title == "Orange Wall"


@pytest.mark.usefixtures("static_backend")
def test_tag_dry_run_and_failure_exit_code(
    make_jpeg: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """A failing image makes the command exit with status 1 after printing every result."""
    good = make_jpeg()
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"\xff\xd8\xff\xe1\xff\xff")
    before = good.read_bytes()

    with pytest.raises(SystemExit) as excinfo:
        m.tag([tmp_path], config_path=tmp_path / "absent.json", dry_run=True, **QUIET)

    assert excinfo.value.code == 1
    out = capsys.readouterr().out
    assert "FAIL" in out
    assert "(dry run)" in out
    assert good.read_bytes() == before


def test_tag_without_usable_backend_exits(
    monkeypatch: pytest.MonkeyPatch,
    make_jpeg: Callable[..., Path],
    tmp_path: Path,
) -> None:
    """A configuration with no usable backend stops before any image is touched."""

    def no_backends(_config: Config) -> list[StaticBackend]:
        msg = "no usable AI backend configured"
        raise ConfigError(msg)

    monkeypatch.setattr(m, "build_backends", no_backends)

    with pytest.raises(SystemExit) as excinfo:
        m.tag([make_jpeg()], config_path=tmp_path / "absent.json", **QUIET)

    assert excinfo.value.code == 1


def test_show_prints_existing_metadata(
    make_jpeg: Callable[..., Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    """The show command reports kind and fields as JSON."""
    path = make_jpeg()

    m.show([path], output_json=True, console_log_level="OFF")

    report = json.loads(capsys.readouterr().out)
    assert report[0]["kind"] == "jpeg"
    assert report[0]["title"] is None
    assert "locations" not in report[0]


def test_clear_backs_up_then_removes(
    make_jpeg: Callable[..., Path],
    capsys: pytest.CaptureFixture[str],
    exif: SimpleNamespace,
) -> None:
    """Clearing keeps a backup of the original and strips the metadata."""
    blob = exif.build([exif.ascii(tiff.TAG_IMAGE_DESCRIPTION, "Some title")])
    path = make_jpeg(exif=blob)
    original = path.read_bytes()

    m.clear([path], **QUIET)

    assert "removed: exif" in capsys.readouterr().out
    assert path.with_name("photo.jpg.bak").read_bytes() == original
    assert read_metadata(path).title is None


def test_init_refuses_to_overwrite(tmp_path: Path) -> None:
    """init writes defaults once and needs --force to replace the file."""
    target = tmp_path / "exif-ai.json"

    m.init(config_path=target)
    assert load_config(target) == Config()

    with pytest.raises(SystemExit):
        m.init(config_path=target)
    m.init(config_path=target, force=True)
