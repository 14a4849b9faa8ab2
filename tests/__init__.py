"""Tests for ci-ssh-relay."""
