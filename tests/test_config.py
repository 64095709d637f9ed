from pathlib import Path

import pytest

from core.config import Settings


class TestSettingsDefaults:
    def test_limits(self) -> None:
        s = Settings()
        assert s.max_file_size_bytes == 20 * 1024 * 1024
        assert s.max_files == 10
        assert s.allowed_content_types == ["image/jpeg", "image/png", "image/webp"]

    def test_sweep_schedule(self) -> None:
        s = Settings()
        assert s.cleanup_interval_seconds == 3600
        assert s.retention_seconds == 1800

    def test_tool_contract(self) -> None:
        s = Settings()
        assert s.model_name == "realesrgan-x4plus"
        assert s.scale == 4
        assert s.process_timeout_seconds is None

    def test_not_development_by_default(self) -> None:
        assert not Settings().is_development


class TestSettingsFromEnv:
    def test_loads_paths(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UPSCALER_UPLOAD_DIR", "/tmp/in")
        monkeypatch.setenv("UPSCALER_EXECUTABLE_PATH", "/opt/realesrgan/realesrgan-ncnn-vulkan")
        s = Settings()
        assert s.upload_dir == Path("/tmp/in")
        assert s.executable_path == Path("/opt/realesrgan/realesrgan-ncnn-vulkan")

    def test_loads_app_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UPSCALER_APP_ENV", "development")
        assert Settings().is_development

    def test_loads_list_as_json(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UPSCALER_ALLOWED_CONTENT_TYPES", '["image/png"]')
        assert Settings().allowed_content_types == ["image/png"]
