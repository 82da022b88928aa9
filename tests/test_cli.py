import pytest

import facelapse_export


def test_build_config_applies_overrides(tmp_path):
    args = facelapse_export.parse_args(
        ["--photos", str(tmp_path), "--fps", "24", "--no-align", "--width", "1280", "--height", "720"]
    )

    config = facelapse_export.build_config(args)

    assert config.io.photos_dir == tmp_path
    assert config.export.fps == 24
    assert config.export.align_eyes is False
    assert config.canvas.size == (1280, 720)


def test_fps_outside_menu_is_rejected_by_parser():
    with pytest.raises(SystemExit):
        facelapse_export.parse_args(["--fps", "12"])


def test_empty_photo_directory_reports_nothing_to_export(tmp_path, capsys):
    status = facelapse_export.main(["--photos", str(tmp_path), "--no-align", "--output", str(tmp_path / "out.mp4")])

    assert status == 1
    assert "No photos to export" in capsys.readouterr().out
    assert not (tmp_path / "out.mp4").exists()


def test_missing_photo_directory_setting(capsys):
    assert facelapse_export.main(["--no-align"]) == 2
    assert "No photo directory" in capsys.readouterr().out


def test_letterbox_flag_disables_fill(tmp_path):
    args = facelapse_export.parse_args(["--photos", str(tmp_path), "--letterbox"])

    assert facelapse_export.build_config(args).canvas.fill is False
    assert facelapse_export.build_config(facelapse_export.parse_args([])).canvas.fill is True


def test_missing_photo_directory_is_reported_without_traceback(tmp_path, capsys):
    status = facelapse_export.main(["--photos", str(tmp_path / "missing"), "--no-align"])

    assert status == 2
    assert "Photo directory not found" in capsys.readouterr().out


def test_missing_eye_cascades_are_reported_without_traceback(tmp_path, monkeypatch, capsys):
    def _no_cascades(config, **kwargs):
        raise FileNotFoundError("Haar cascades not found in /nowhere")

    monkeypatch.setattr(facelapse_export, "MontageExporter", _no_cascades)

    assert facelapse_export.main(["--photos", str(tmp_path)]) == 2
    assert "Haar cascades not found" in capsys.readouterr().out
