"""Tests for the tally-demo command line harness."""

import pytest

from tally_stage.scripts.demo import build_parser, main


@pytest.fixture()
def url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'demo.db'}"


def _run(url: str, *argv: str) -> int:
    return main(["--url", url, "--log-level", "WARNING", *argv])


def test_init_db_and_seed(url, capsys) -> None:
    assert _run(url, "init-db") == 0
    assert _run(url, "init-db", "--drop") == 0
    assert _run(url, "seed", "--users", "2", "--posts", "1") == 0

    out = capsys.readouterr().out
    assert "[demo] dropped all tables" in out
    assert "[demo] users=[1, 2] posts=[1]" in out


def test_like_report_and_reconcile(url, capsys) -> None:
    _run(url, "seed", "--users", "2", "--posts", "1")
    assert _run(url, "like", "--user", "2", "--post", "1", "--strategy", "unprotected") == 0
    assert (
        _run(
            url,
            "like",
            "--user",
            "1",
            "--post",
            "1",
            "--strategy",
            "unprotected",
            "--fail-at",
            "before_aggregate_write",
        )
        == 0
    )
    capsys.readouterr()

    assert _run(url, "report", "--counter", "post.likes") == 0
    out = capsys.readouterr().out
    assert "[demo]   post 1: stored=1 actual=2  <- drift" in out

    assert _run(url, "reconcile", "--strict") == 2
    assert "[demo] DRIFT" in capsys.readouterr().err

    assert _run(url, "reconcile", "--repair") == 0
    assert _run(url, "reconcile", "--strict") == 0
    assert "mismatches=0" in capsys.readouterr().out


def test_event_strategy_drains_listener(url, capsys) -> None:
    _run(url, "seed", "--users", "1", "--posts", "1")

    assert _run(url, "like", "--user", "1", "--post", "1", "--strategy", "event") == 0

    out = capsys.readouterr().out
    assert "state=aggregate_deferred" in out
    assert "[demo] listener applied 1 event(s)" in out


def test_unlike_unknown_fails(url, capsys) -> None:
    assert _run(url, "unlike", "42", "--strategy", "transactional") == 1
    assert "[demo] ERROR" in capsys.readouterr().err


def test_scenario(url, capsys) -> None:
    assert _run(url, "scenario", "three-likes") == 0

    out = capsys.readouterr().out
    assert "[demo] scenario three-likes: post.likes" in out
    assert "stored=2 actual=3" in out


def test_parser_rejects_unknown_scenario() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["scenario", "meteor"])
