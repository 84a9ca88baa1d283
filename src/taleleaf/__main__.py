"""Allow ``python -m taleleaf`` to run the governor CLI."""

from .app import main

if __name__ == "__main__":  # pragma: no cover - exercised via CLI
    raise SystemExit(main())
