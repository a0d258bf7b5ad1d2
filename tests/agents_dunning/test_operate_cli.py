"""Tests for tools/operate/dunning_run.py against a SQLite file database."""

import json

import pytest
import sqlalchemy as sa

from agents.dunning.dto import AgingBucket
from agents.dunning.sql_stores import SqlObligationStore, SqlTemplateStore, create_schema
from tests.agents_dunning.factories import OWNER_ID, make_obligation
from tools.operate import dunning_run


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'dunning.db'}"


@pytest.fixture
def seeded_db(db_url):
    engine = sa.create_engine(db_url, future=True)
    tables = create_schema(engine)
    store = SqlObligationStore(engine, tables)
    store.add(make_obligation(4))
    store.add(make_obligation(50))
    yield engine, tables
    engine.dispose()


def _run(db_url, *args):
    return dunning_run.main(
        [
            "--database-url",
            db_url,
            "--owner",
            OWNER_ID,
            "--today",
            "2025-03-01",
            "--workers",
            "1",
            *args,
        ]
    )


def _last_json(output: str) -> dict:
    # Delivery audit lines precede the indented summary
    return json.loads(output[output.index("{\n") :])


def test_operate_cycle(db_url, seeded_db, capsys):
    engine, tables = seeded_db

    assert _run(db_url, "seed") == dunning_run.EXIT_OK
    assert len(_last_json(capsys.readouterr().out)["created"]) == 6

    assert _run(db_url, "reassign") == dunning_run.EXIT_OK
    assert _last_json(capsys.readouterr().out)["reassigned"] == 2

    assert _run(db_url, "generate", "dpd_1_30", "--tone", "2") == dunning_run.EXIT_OK
    assert _last_json(capsys.readouterr().out)["templates_created"] == 4

    templates = SqlTemplateStore(engine, tables).list_templates(OWNER_ID, AgingBucket.DPD_1_30)
    for template in templates:
        assert _run(db_url, "approve", template.template_id) == dunning_run.EXIT_OK
        assert _last_json(capsys.readouterr().out)["state"] == "approved"

    assert _run(db_url, "--transport", "stdout", "dispatch") == dunning_run.EXIT_OK
    out = capsys.readouterr().out
    assert '"transport": "stdout"' in out
    assert _last_json(out)["sent"] == 1

    assert _run(db_url, "dispatch") == dunning_run.EXIT_OK
    assert _last_json(capsys.readouterr().out)["sent"] == 0

    assert _run(db_url, "report") == dunning_run.EXIT_OK
    report = _last_json(capsys.readouterr().out)
    assert report["total"] == 2
    assert report["buckets"]["dpd_1_30"]["steps"][0]["count"] == 1


def test_invalid_tone_is_rejected(db_url, seeded_db, capsys):
    _run(db_url, "seed")
    capsys.readouterr()
    assert _run(db_url, "generate", "dpd_1_30", "--tone", "9") == dunning_run.EXIT_ERROR
    assert json.loads(capsys.readouterr().out)["success"] is False


def test_invalid_transition_is_rejected(db_url, seeded_db, capsys):
    engine, tables = seeded_db
    _run(db_url, "seed")
    _run(db_url, "generate", "dpd_1_30")
    template = SqlTemplateStore(engine, tables).list_templates(OWNER_ID, AgingBucket.DPD_1_30)[0]
    assert _run(db_url, "discard", template.template_id) == dunning_run.EXIT_OK
    assert _run(db_url, "approve", template.template_id) == dunning_run.EXIT_ERROR


def test_unreadable_store_exits_with_store_code(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'missing' / 'dunning.db'}"
    assert _run(url, "report") == dunning_run.EXIT_STORE_UNAVAILABLE
    assert json.loads(capsys.readouterr().out)["success"] is False
