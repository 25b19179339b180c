import sys

import pytest
import torch
from PIL import Image

import run
from conftest import BrightnessModel, make_subject_rgba, png_bytes
from cutout.model import ModelHandle


@pytest.fixture
def fake_handle(monkeypatch):
    handle = ModelHandle(lambda: (BrightnessModel().eval(), torch.device("cpu")), name="fake")
    monkeypatch.setattr(run.ModelHandle, "from_spec", classmethod(lambda cls, spec, name=None: handle))
    return handle


def _argv(monkeypatch, tmp_path, *extra):
    monkeypatch.setattr(sys, "argv", ["run.py", "--input", str(tmp_path / "in"), "--output", str(tmp_path / "out"), *extra])


@pytest.mark.parametrize(
    "flag",
    ["--feather=-1", "--dilation=-2", "--feather-opacity=-0.1", "--feather-opacity=1.5", "--foreground-threshold=101"],
)
def test_bad_refinement_flags_are_usage_errors(monkeypatch, tmp_path, fake_handle, flag):
    (tmp_path / "in").mkdir()
    _argv(monkeypatch, tmp_path, flag)
    with pytest.raises(SystemExit) as exc:
        run.main()
    assert exc.value.code == 2
    assert fake_handle.state.value == "uninitialized"


def test_jpeg_needs_opaque_backdrop(monkeypatch, tmp_path, fake_handle):
    (tmp_path / "in").mkdir()
    _argv(monkeypatch, tmp_path, "--format", "jpg")
    with pytest.raises(SystemExit):
        run.main()


def test_batch_writes_cutouts_and_reports_failures(monkeypatch, tmp_path, fake_handle):
    src = tmp_path / "in"
    (src / "nested").mkdir(parents=True)
    (src / "nested" / "a.png").write_bytes(png_bytes(make_subject_rgba()))
    (src / "broken.png").write_bytes(b"not an image")
    _argv(monkeypatch, tmp_path, "--feather", "1.5", "--feather-opacity", "0.3")

    assert run.main() == 1
    out = Image.open(tmp_path / "out" / "nested" / "a.png")
    assert out.mode == "RGBA"
    assert out.size == (64, 48)
