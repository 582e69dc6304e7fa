"""
tests/test_cli.py
"""
from __future__ import annotations

import microlight.blog as blog
from microlight.blog import app
from microlight.db import DB, IDENTITY, RELME, DataCorruption, RelMe, Repository
from microlight.posts import create_post


def _runner(tmp_path, monkeypatch):
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "cli.sqlite3"))
    return app.test_cli_runner()


def test_init_creates_identity_once(tmp_path, monkeypatch):
    runner = _runner(tmp_path, monkeypatch)

    result = runner.invoke(
        args=["init", "--name", "Jane", "--relme", "https://github.com/jane"]
    )
    assert result.exit_code == 0, result.output
    assert "created" in result.output

    again = runner.invoke(args=["init", "--name", "Someone Else"])
    assert again.exit_code == 0
    assert "already exists" in again.output

    with DB(app.config["DATABASE"]) as db:
        people = Repository(db, IDENTITY).find()
        assert [p.name for p in people] == ["Jane"]
        links = Repository(db, RELME).find()
        assert [(r.url, r.identity_id) for r in links] == [
            ("https://github.com/jane", people[0].id)
        ]


def test_init_is_all_or_nothing(tmp_path, monkeypatch):
    runner = _runner(tmp_path, monkeypatch)
    # url is NOT NULL, so the rel=me insert fails after the identity insert
    monkeypatch.setattr(
        blog, "RelMe", lambda url, identity_id: RelMe(url=None, identity_id=identity_id)
    )

    result = runner.invoke(
        args=["init", "--name", "Jane", "--relme", "https://github.com/jane"]
    )
    assert result.exit_code != 0
    assert isinstance(result.exception, DataCorruption)

    with DB(app.config["DATABASE"]) as db:
        assert Repository(db, IDENTITY).count() == 0
        assert Repository(db, RELME).count() == 0


def test_posts_and_delete(tmp_path, monkeypatch):
    runner = _runner(tmp_path, monkeypatch)
    assert runner.invoke(args=["init", "--name", "Jane"]).exit_code == 0

    with DB(app.config["DATABASE"]) as db:
        post = create_post(db, name="CLI Post", content="hi")
        assert post.identity_id is not None

    listed = runner.invoke(args=["posts"])
    assert "cli-post" in listed.output

    gone = runner.invoke(args=["delete", "cli-post"])
    assert gone.exit_code == 0
    assert runner.invoke(args=["posts"]).output.strip() == ""

    missing = runner.invoke(args=["delete", "cli-post"])
    assert missing.exit_code != 0
    assert "does not exist" in missing.output
