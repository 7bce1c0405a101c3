"""Request broker and human-approval gate for a self-custodial wallet."""

__version__ = "0.1.0"
