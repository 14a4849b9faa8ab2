"""ci-ssh-relay - Ephemeral SSH access to CI jobs through public tunnels."""

__version__ = "2.0.0"
