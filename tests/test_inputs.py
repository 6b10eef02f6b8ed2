"""Tests for reference image persistence."""
import base64

from muse_runner.core.inputs import InputImage, input_file_name, normalize_input_root, write_input_file


def test_from_base64_data_url():
    image = InputImage.from_base64("data:image/jpeg;base64," + base64.b64encode(b"jpg").decode())
    assert image.data == b"jpg"
    assert image.extension == ".jpg"


def test_from_plain_base64_defaults_to_png():
    image = InputImage.from_base64(base64.b64encode(b"raw").decode())
    assert image.data == b"raw"
    assert image.safe_extension == ".png"


def test_unknown_extension_falls_back_to_png():
    assert InputImage(b"", ".gif").safe_extension == ".png"
    assert InputImage(b"", "WEBP").safe_extension == ".webp"


def test_input_file_name():
    name = input_file_name("init", "run-1", InputImage(b"", ".jpeg"))
    assert name.startswith("init_run-1_")
    assert name.endswith(".jpeg")


def test_normalize_input_root(tmp_path):
    assert normalize_input_root(tmp_path / "init_images") == tmp_path.resolve()
    assert normalize_input_root(tmp_path) == tmp_path.resolve()


def test_write_input_file(tmp_path):
    name = write_input_file(tmp_path / "control_images", "control_images", "c.png", b"data")
    assert name == "control_images/c.png"
    assert (tmp_path / "control_images" / "c.png").read_bytes() == b"data"
