import nox

nox.options.sessions = [
    "format",
    "lint",
    "typecheck",
    "test",
]
# Create fresh isolated environments using uv backend
nox.options.reuse_existing_virtualenvs = False
nox.options.default_venv_backend = "uv"


@nox.session(python="3.12")
def fix(session: nox.Session) -> None:
    """Format and fix code issues."""
    session.install("black", "isort", "ruff")
    session.run("black", "services/")
    session.run("isort", "services/")
    session.run("ruff", "check", "--fix", "services/")


@nox.session(python="3.12")
def format(session: nox.Session) -> None:
    """Check code formatting."""
    session.install("black", "isort")
    session.run("black", "--check", "--diff", "services/")
    session.run("isort", "--check-only", "--diff", "services/")


@nox.session(python="3.12")
def lint(session: nox.Session) -> None:
    """Run linting."""
    session.install("ruff")
    session.run("ruff", "check", "services/")


@nox.session(python="3.12")
def typecheck(session: nox.Session) -> None:
    """Run type checking."""
    session.install("mypy")
    session.install("-e", ".[test]")
    session.run("mypy", "services/common", "services/qconnect")


@nox.session(python="3.12")
def test(session: nox.Session) -> None:
    """Run tests for the client and shared utilities."""
    session.install("-e", ".[test]")
    session.run("python", "-m", "pytest", "-v", "-r", "fE", *session.posargs)


@nox.session(python="3.12")
def test_cov(session: nox.Session) -> None:
    """Run tests with coverage."""
    session.install("-e", ".[test]", "pytest-cov")
    session.run(
        "python",
        "-m",
        "pytest",
        "--cov=services",
        "--cov-report=xml:coverage.xml",
        "-r",
        "fE",
    )
