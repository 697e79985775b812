"""Entry point for python -m adpipe"""
from adpipe.cli.commands import app

if __name__ == "__main__":
    app()
