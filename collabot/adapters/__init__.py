from collabot.adapters.cli import CliAdapter

__all__ = ["CliAdapter"]
