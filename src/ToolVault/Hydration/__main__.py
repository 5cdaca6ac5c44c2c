"""Entry point for CLI invocation via python -m."""

from ToolVault.Hydration.cli import app

if __name__ == "__main__":
    app()
