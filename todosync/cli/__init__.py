"""Command-line interface for todosync."""
