"""Test fixtures package for Toolpkg."""
