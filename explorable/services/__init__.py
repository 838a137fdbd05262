"""Explorable services layer."""
