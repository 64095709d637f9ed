import pytest

modal = pytest.importorskip("modal")


def test_modal_app_is_defined() -> None:
    import main

    assert main.app.name == "image-upscaler"
    assert main.REALESRGAN_URL.endswith("ubuntu.zip")
