"""
Entry point for running toolchat as a module: python -m toolchat
"""

from toolchat.cli.commands import app

if __name__ == "__main__":
    app()
