"""Tests for the workbook bootstrap script."""

from __future__ import annotations

from pathlib import Path

import openpyxl
import pytest

from bookstore_pos import setup_excel


def _write_config(directory: Path, body: str) -> Path:
    config_path = directory / "config.ini"
    config_path.write_text(body, encoding="utf-8")
    return config_path


def test_create_master_workbook_writes_headed_sheets(tmp_path):
    """Every sheet is created with its header row and nothing else."""

    destination = setup_excel.create_master_workbook(tmp_path / "data" / "pos.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == list(setup_excel.SHEET_COLUMNS)
    for sheet_name, columns in setup_excel.SHEET_COLUMNS.items():
        worksheet = workbook[sheet_name]
        header = [cell.value for cell in worksheet[1]]
        assert header == list(columns)
        assert worksheet.max_row == 1


def test_create_master_workbook_refuses_overwrite(tmp_path):
    """An existing file is kept unless overwrite is requested."""

    destination = setup_excel.create_master_workbook(tmp_path / "pos.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)
    assert setup_excel.create_master_workbook(destination, overwrite=True) == destination


def test_load_settings_anchors_relative_data_file(tmp_path):
    """Relative DataFile entries resolve against the config directory."""

    config_path = _write_config(tmp_path, "[System]\nDataFile = data/pos.xlsx\n")

    settings = setup_excel.load_settings(config_path)

    assert settings.data_file == (tmp_path / "data" / "pos.xlsx").resolve()


def test_load_settings_requires_data_file(tmp_path):
    """A config without DataFile is reported as a missing entry."""

    config_path = _write_config(tmp_path, "[System]\nStoreName = Test\n")

    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)
    with pytest.raises(FileNotFoundError):
        setup_excel.load_settings(tmp_path / "absent.ini")


def test_main_creates_then_refuses_without_force(tmp_path, capsys):
    """The script succeeds once, then needs --force to run again."""

    config_path = _write_config(tmp_path, "[System]\nDataFile = pos.xlsx\n")

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert (tmp_path / "pos.xlsx").exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    """A missing config file is an error exit, not a traceback."""

    assert setup_excel.main(["--config", str(tmp_path / "nope.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
