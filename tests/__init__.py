"""Tests for the kobo_release bundler."""
