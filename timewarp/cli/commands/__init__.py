"""Typer sub-applications, one per engine."""
