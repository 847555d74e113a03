"""Tests for the command line entry point."""

import json
import sys

import cv2
import pytest

from chess_stream import main as cli


def test_parser_commands():
    parser = cli.build_parser()
    args = parser.parse_args(["watch", "--video", "v.mp4", "--interval", "2", "--json", "--flip"])
    assert args.command == "watch"
    assert args.interval == 2.0
    assert args.json and args.flip
    assert args.model is None


def test_settings_from_args_overrides_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"capture_interval": 2.0, "force_flip": True}), encoding="utf-8")
    args = cli.build_parser().parse_args([
        "watch", "--video", "v.mp4", "--settings", str(path),
        "--interval", "0.1", "--confidence-threshold", "0.7",
    ])
    settings = cli._settings_from_args(args)
    assert settings.capture_interval == 0.5
    assert settings.low_confidence_threshold == 0.7
    assert settings.force_flip is True
    assert settings.test_time_augmentation is False


def test_tta_flag_enables_test_time_augmentation():
    args = cli.build_parser().parse_args(["recognize", "--image", "b.png", "--tta"])
    assert cli._settings_from_args(args).test_time_augmentation is True


def test_recognize_prints_fen(tmp_path, board_frame, capsys, monkeypatch):
    image_path = tmp_path / "board.png"
    cv2.imwrite(str(image_path), cv2.cvtColor(board_frame.pixels, cv2.COLOR_RGBA2BGR))
    save_path = tmp_path / "last.json"
    monkeypatch.setattr(sys, "argv", [
        "chess_stream", "recognize", "--image", str(image_path),
        "--model", str(tmp_path / "missing.pt"), "--save-last", str(save_path),
    ])

    cli.main()

    out = capsys.readouterr().out
    assert "FEN" in out
    saved = json.loads(save_path.read_text(encoding="utf-8"))
    assert saved["change"] == "new-game"
    assert saved["fen"].endswith(" w - - 0 1")


def test_recognize_unreadable_image_exits(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "argv", [
        "chess_stream", "recognize", "--image", str(tmp_path / "nope.png"),
    ])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 1
