import json

import pytest

from autonews import cli
from autonews.db import connect_db
from autonews.storage import find_images_by_tags, list_generation_logs


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch, logger):
    monkeypatch.setattr(cli, "configure_logging", lambda name: logger)


def test_db_migrate_creates_database(tmp_path):
    db_path = tmp_path / "nested" / "autonews.sqlite3"
    assert cli.main(["--db", str(db_path), "db", "migrate"]) == 0
    assert db_path.exists()


def test_images_import_normalizes_tags(tmp_path):
    db_path = tmp_path / "autonews.sqlite3"
    images = tmp_path / "images.yml"
    images.write_text(
        "\n".join(
            [
                "- public_id: news-images/politics/parliament-house",
                "  url: https://img.example.org/parliament.jpg",
                "  tags: [Parliament, ' Politics ', parliament]",
                "  category: politics",
                "  priority: 5",
                "- public_id: missing-url",
                "- not-a-mapping",
            ]
        ),
        encoding="utf-8",
    )

    assert cli.main(["--db", str(db_path), "images", "import", str(images)]) == 0

    conn = connect_db(str(db_path))
    try:
        entries = find_images_by_tags(conn, ["parliament"], 10)
    finally:
        conn.close()
    assert [entry.public_id for entry in entries] == ["news-images/politics/parliament-house"]
    assert entries[0].tags == ["parliament", "politics"]
    assert entries[0].priority == 5


def test_images_import_rejects_non_list(tmp_path):
    images = tmp_path / "images.yml"
    images.write_text("public_id: x\n", encoding="utf-8")
    assert cli.main(["--db", str(tmp_path / "a.sqlite3"), "images", "import", str(images)]) == 1


def test_config_show_applies_env(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("AN_MAX_PER_RUN", "3")
    assert cli.main(["--db", str(tmp_path / "a.sqlite3"), "config", "show"]) == 0

    shown = json.loads(capsys.readouterr().out)
    assert shown["scheduler"]["max_per_run"] == 3
    assert shown["images"]["min_confidence"] == 110


def test_config_error_exits_nonzero(monkeypatch, tmp_path):
    monkeypatch.setenv("AN_MAX_PER_RUN", "many")
    assert cli.main(["--db", str(tmp_path / "a.sqlite3"), "config", "show"]) == 1


def test_run_once_without_allowance_records_skip(monkeypatch, tmp_path, capsys):
    db_path = str(tmp_path / "a.sqlite3")
    monkeypatch.setenv("AN_WINDOW_START_HOUR", "0")
    monkeypatch.setenv("AN_WINDOW_END_HOUR", "0")
    monkeypatch.setenv("AN_MAX_PER_HOUR", "0")

    assert cli.main(["--db", db_path, "run-once"]) == 0
    assert cli.main(["--db", db_path, "status", "--limit", "5"]) == 0

    status = json.loads(capsys.readouterr().out)
    assert status["allowed_now"] == 0
    assert status["recent_runs"][0]["reason"] == "no_allowance"

    conn = connect_db(db_path)
    try:
        assert len(list_generation_logs(conn)) == 1
    finally:
        conn.close()


def test_images_import_skips_non_numeric_priority(tmp_path):
    db_path = tmp_path / "autonews.sqlite3"
    images = tmp_path / "images.yml"
    images.write_text(
        "\n".join(
            [
                "- public_id: news-images/sports/stadium",
                "  url: https://img.example.org/stadium.jpg",
                "  tags: [sports]",
                "  priority: high",
                "- public_id: news-images/sports/cricket",
                "  url: https://img.example.org/cricket.jpg",
                "  tags: [sports]",
                "  priority: 2",
            ]
        ),
        encoding="utf-8",
    )

    assert cli.main(["--db", str(db_path), "images", "import", str(images)]) == 0

    conn = connect_db(str(db_path))
    try:
        entries = find_images_by_tags(conn, ["sports"], 10)
    finally:
        conn.close()
    assert [entry.public_id for entry in entries] == ["news-images/sports/cricket"]


def test_config_import_updates_stored_config(monkeypatch, tmp_path, capsys):
    monkeypatch.delenv("AN_MAX_PER_RUN", raising=False)
    db_path = str(tmp_path / "a.sqlite3")
    overrides = tmp_path / "overrides.yml"
    overrides.write_text("scheduler:\n  max_per_run: 4\n", encoding="utf-8")

    assert cli.main(["--db", db_path, "config", "import", str(overrides)]) == 0
    assert cli.main(["--db", db_path, "config", "show"]) == 0

    shown = json.loads(capsys.readouterr().out)
    assert shown["scheduler"]["max_per_run"] == 4
    assert shown["scheduler"]["max_per_hour"] == 12


def test_config_import_rejects_invalid_values(tmp_path):
    db_path = str(tmp_path / "a.sqlite3")
    overrides = tmp_path / "overrides.yml"
    overrides.write_text("scheduler:\n  max_per_run: lots\n", encoding="utf-8")

    assert cli.main(["--db", db_path, "config", "import", str(overrides)]) == 1
