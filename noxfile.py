"""Nox sessions for loopdeck quality gates."""

from __future__ import annotations

import nox

nox.options.sessions = ["lint", "typecheck", "tests"]


@nox.session
def lint(session: nox.Session) -> None:
    """Check lint and formatting without rewriting files."""
    session.install("ruff")
    session.run("ruff", "check", "src", "tests", "noxfile.py")
    session.run("ruff", "format", "--check", "src", "tests", "noxfile.py")


@nox.session
def typecheck(session: nox.Session) -> None:
    """Type-check the engine with its runtime dependencies installed."""
    session.install("mypy", "types-requests")
    session.install("-e", ".")
    session.run("mypy", "src/loopdeck")


@nox.session
def tests(session: nox.Session) -> None:
    session.install("-e", ".[test]")
    session.run("pytest", *session.posargs)


@nox.session(name="fake-demo")
def fake_demo(session: nox.Session) -> None:
    """Log in and play the deck against the in-memory transport."""
    session.install("-e", ".")
    session.run("loopdeck", "--backend", "fake", "login")
    session.run("loopdeck", "--backend", "fake", "play")
