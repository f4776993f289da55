"""Tests for the CLI error message helpers: each names the cause and the fix."""

from __future__ import annotations

from codeindex.cli.errors import (
    err_build_failed,
    err_build_in_progress,
    err_config,
    err_config_mismatch,
    err_corrupt_index,
    err_encoder_unavailable,
    err_ignore_no_action,
    err_no_index,
)


def test_no_index_suggests_build() -> None:
    msg = err_no_index("/p/.codeindex")
    assert "/p/.codeindex" in msg
    assert "codeindex build" in msg


def test_build_in_progress_names_owner() -> None:
    msg = err_build_in_progress(4242, "2026-01-01T00:00:00Z")
    assert "pid 4242" in msg
    assert "codeindex status" in msg


def test_build_in_progress_without_owner() -> None:
    assert "pid" not in err_build_in_progress(None, None)


def test_encoder_unavailable_mentions_offline() -> None:
    msg = err_encoder_unavailable("bge-small", "not cached")
    assert "bge-small" in msg
    assert "not cached" in msg
    assert "offline: false" in msg


def test_listed_reasons() -> None:
    assert "    - model 'a'" in err_config_mismatch(["model 'a'", "dimension 3"])
    assert "    - bad checksum" in err_corrupt_index(["bad checksum"])


def test_every_message_has_an_action() -> None:
    messages = [
        err_no_index("x"),
        err_build_in_progress(1, "t"),
        err_encoder_unavailable("m", "d"),
        err_config_mismatch(["r"]),
        err_build_failed("disk full"),
        err_corrupt_index(["p"]),
        err_config("bad"),
        err_ignore_no_action(),
    ]
    for msg in messages:
        assert msg.startswith("[red]Error:[/]")
        assert "codeindex" in msg
