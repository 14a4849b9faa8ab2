"""Configuration for ci-ssh-relay.

Settings are read from the environment variables CI pipelines already set
(SSH_PORT, PINGGY_ENABLE, CLOUDFLARED_APIKEY, ...), optionally layered over a
TOML file. The resulting object is frozen and handed to every component.
"""

import base64
import binascii
import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import Timeouts, TunnelDescriptor, TunnelKind

DEFAULT_SSHD_TEMPLATE = """# Auto-generated (USER-MODE) by ci-ssh-relay
Port {{PORT}}
ListenAddress {{LISTEN_ADDRESS}}

PasswordAuthentication no
KbdInteractiveAuthentication no
ChallengeResponseAuthentication no
PubkeyAuthentication yes
PermitRootLogin no
UsePAM no
PrintMotd no
StrictModes no

AuthorizedKeysFile {{AUTHORIZED_KEYS_FILE}}
AllowUsers {{ALLOW_USERS}}

PidFile {{PID_FILE}}
HostKey {{HOSTKEY_ED25519}}
HostKey {{HOSTKEY_RSA}}

Subsystem sftp internal-sftp
LogLevel VERBOSE

{{FORCE_CWD_BLOCK}}
"""

DEFAULT_CLOUDFLARED_TEMPLATE = """tunnel: {{TUNNEL_ID}}

ingress:
  - service: tcp://{{TARGET_HOST}}:{{TARGET_PORT}}
  - service: http_status:404
"""

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")
_PRINTABLE_RE = re.compile(r"^[ -~\n\r\t]+$")

# Minimums enforced by validate_for_run (milliseconds)
MIN_PORT_TIMEOUT_MS = 1000
MIN_CF_ENDPOINT_TIMEOUT_MS = 5000


def _env(name: str, env: str) -> AliasChoices:
    return AliasChoices(name, env)


def decode_template(value: str | None) -> str | None:
    """Return a template, decoding it first if it was passed base64-encoded."""
    if not value:
        return None

    stripped = value.strip()
    if _BASE64_RE.match(stripped):
        try:
            decoded = base64.b64decode(stripped, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return value
        if "\n" in decoded or _PRINTABLE_RE.match(decoded):
            return decoded

    return value


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute ``{{NAME}}`` placeholders."""
    result = template
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", str(value))
    return result


class SetupSettings(BaseSettings):
    """All settings for one ci-ssh-relay run."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # SSH server
    ssh_port: int = Field(default=2222, ge=1, le=65535, validation_alias=_env("ssh_port", "SSH_PORT"))
    ssh_mode: Literal["auto", "user", "root"] = Field(
        default="auto",
        validation_alias=_env("ssh_mode", "SSH_MODE"),
        description="auto and user run a private sshd, root rewrites the system sshd",
    )
    ssh_allow_users: str = Field(default="", validation_alias=_env("ssh_allow_users", "SSH_ALLOW_USERS"))
    ssh_default_cwd: str | None = Field(
        default=None, validation_alias=_env("ssh_default_cwd", "SSH_DEFAULT_CWD")
    )
    ssh_disable_force_cwd: bool = Field(
        default=False, validation_alias=_env("ssh_disable_force_cwd", "SSH_DISABLE_FORCE_CWD")
    )
    ssh_listen_address: str = Field(
        default="127.0.0.1", validation_alias=_env("ssh_listen_address", "SSH_LISTEN_ADDRESS")
    )
    ssh_public_key: str | None = Field(
        default=None, validation_alias=_env("ssh_public_key", "PIPELINE_SSH_PUBKEY")
    )
    sshd_path: str | None = Field(default=None, validation_alias=_env("sshd_path", "SSHD_PATH"))
    sshd_config_template: str | None = Field(
        default=None, validation_alias=_env("sshd_config_template", "SSHD_CONFIG_TEMPLATE")
    )

    # Pinggy
    pinggy_enabled: bool = Field(default=False, validation_alias=_env("pinggy_enabled", "PINGGY_ENABLE"))
    pinggy_foreground: bool = Field(
        default=False, validation_alias=_env("pinggy_foreground", "PINGGY_FOREGROUND")
    )
    pinggy_target_host: str = Field(
        default="localhost", validation_alias=_env("pinggy_target_host", "PINGGY_TARGET_HOST")
    )
    pinggy_target_port: int | None = Field(
        default=None, validation_alias=_env("pinggy_target_port", "PINGGY_TARGET_PORT")
    )
    pinggy_region_host: str = Field(
        default="a.pinggy.io", validation_alias=_env("pinggy_region_host", "PINGGY_REGION_HOST")
    )

    # SSH-J
    sshj_enabled: bool = Field(default=False, validation_alias=_env("sshj_enabled", "SSHJ_ENABLE"))
    sshj_foreground: bool = Field(
        default=False, validation_alias=_env("sshj_foreground", "SSHJ_FOREGROUND")
    )
    sshj_host: str = Field(default="ssh-j.com", validation_alias=_env("sshj_host", "SSHJ_HOST"))
    sshj_namespace: str | None = Field(
        default=None, validation_alias=_env("sshj_namespace", "SSHJ_NAMESPACE")
    )
    sshj_device: str | None = Field(default=None, validation_alias=_env("sshj_device", "SSHJ_DEVICE"))
    sshj_device_port: int = Field(
        default=22, ge=1, le=65535, validation_alias=_env("sshj_device_port", "SSHJ_DEVICE_PORT")
    )
    sshj_local_host: str = Field(
        default="localhost", validation_alias=_env("sshj_local_host", "SSHJ_LOCAL_HOST")
    )
    sshj_local_port: int | None = Field(
        default=None, validation_alias=_env("sshj_local_port", "SSHJ_LOCAL_PORT")
    )

    # Cloudflare
    cf_enabled: bool = Field(default=False, validation_alias=_env("cf_enabled", "CF_ENABLE"))
    cloudflared_foreground: bool = Field(
        default=False, validation_alias=_env("cloudflared_foreground", "CLOUDFLARED_FOREGROUND")
    )
    cloudflared_api_key: str | None = Field(
        default=None, validation_alias=_env("cloudflared_api_key", "CLOUDFLARED_APIKEY")
    )
    cloudflared_tunnel_name: str | None = Field(
        default=None, validation_alias=_env("cloudflared_tunnel_name", "CLOUDFLARED_TUNNEL_NAME")
    )
    cloudflared_target_host: str = Field(
        default="localhost",
        validation_alias=_env("cloudflared_target_host", "CLOUDFLARED_TARGET_HOST"),
    )
    cloudflared_target_port: int | None = Field(
        default=None, validation_alias=_env("cloudflared_target_port", "CLOUDFLARED_TARGET_PORT")
    )
    cloudflared_path: str | None = Field(
        default=None, validation_alias=_env("cloudflared_path", "CLOUDFLARED_PATH")
    )
    cloudflared_download_url: str | None = Field(
        default=None, validation_alias=_env("cloudflared_download_url", "CLOUDFLARED_DOWNLOAD_URL")
    )
    cloudflared_config_template: str | None = Field(
        default=None,
        validation_alias=_env("cloudflared_config_template", "CLOUDFLARED_CONFIG_TEMPLATE"),
    )

    # Timeouts (milliseconds, as exported by pipelines)
    ssh_port_timeout_ms: int = Field(
        default=8000, validation_alias=_env("ssh_port_timeout_ms", "SSH_PORT_TIMEOUT")
    )
    tunnel_startup_timeout_ms: int = Field(
        default=10000, validation_alias=_env("tunnel_startup_timeout_ms", "TUNNEL_STARTUP_TIMEOUT")
    )
    cf_endpoint_timeout_ms: int = Field(
        default=15000, validation_alias=_env("cf_endpoint_timeout_ms", "CF_ENDPOINT_TIMEOUT")
    )
    http_request_timeout_ms: int = Field(
        default=8000, validation_alias=_env("http_request_timeout_ms", "HTTP_REQUEST_TIMEOUT")
    )
    download_timeout_ms: int = Field(
        default=30000, validation_alias=_env("download_timeout_ms", "DOWNLOAD_TIMEOUT")
    )

    # Persistence
    rtdb_url: str | None = Field(default=None, validation_alias=_env("rtdb_url", "ENV_SSH_URLS"))
    rtdb_id: str | None = Field(default=None, validation_alias=_env("rtdb_id", "ENV_SSH_URLS_ID"))
    ntfy_topic: str | None = Field(default=None, validation_alias=_env("ntfy_topic", "ENV_NTFY_TOPIC"))
    ntfy_url: str = Field(default="https://ntfy.sh", validation_alias=_env("ntfy_url", "NTFY_URL"))

    dry_run: bool = Field(default=False, validation_alias=_env("dry_run", "DRY_RUN"))
    log_level: str = Field(default="INFO", validation_alias=_env("log_level", "LOG_LEVEL"))

    @field_validator("ssh_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or "auto"
        return value

    @field_validator(
        "pinggy_target_port",
        "sshj_local_port",
        "cloudflared_target_port",
        "ssh_public_key",
        "ssh_default_cwd",
        "sshj_namespace",
        "sshj_device",
        "cloudflared_api_key",
        "cloudflared_tunnel_name",
        "rtdb_url",
        "rtdb_id",
        "ntfy_topic",
        mode="before",
    )
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def allowed_users(self) -> list[str]:
        """SSH_ALLOW_USERS split on commas and whitespace."""
        return [u for u in re.split(r"[,\s]+", self.ssh_allow_users) if u]

    @property
    def timeouts(self) -> Timeouts:
        return Timeouts(
            port_wait=self.ssh_port_timeout_ms / 1000,
            tunnel_startup=self.tunnel_startup_timeout_ms / 1000,
            cf_endpoint=self.cf_endpoint_timeout_ms / 1000,
            http_request=self.http_request_timeout_ms / 1000,
            download=self.download_timeout_ms / 1000,
        )

    @property
    def sshd_template(self) -> str:
        return decode_template(self.sshd_config_template) or DEFAULT_SSHD_TEMPLATE

    @property
    def cloudflared_template(self) -> str:
        return decode_template(self.cloudflared_config_template) or DEFAULT_CLOUDFLARED_TEMPLATE

    @property
    def rtdb_enabled(self) -> bool:
        return bool(self.rtdb_url and self.rtdb_id)

    @property
    def ntfy_enabled(self) -> bool:
        return bool(self.ntfy_topic)

    def descriptor(self, kind: TunnelKind) -> TunnelDescriptor:
        """Build the read-only descriptor for one tunnel backend."""
        timeouts = self.timeouts
        if kind is TunnelKind.PINGGY:
            return TunnelDescriptor(
                kind=kind,
                enabled=self.pinggy_enabled,
                target_host=self.pinggy_target_host,
                target_port=self.pinggy_target_port,
                foreground=self.pinggy_foreground,
                timeouts=timeouts,
            )
        if kind is TunnelKind.SSHJ:
            return TunnelDescriptor(
                kind=kind,
                enabled=self.sshj_enabled,
                target_host=self.sshj_local_host,
                target_port=self.sshj_local_port,
                foreground=self.sshj_foreground,
                timeouts=timeouts,
            )
        return TunnelDescriptor(
            kind=kind,
            enabled=self.cf_enabled,
            target_host=self.cloudflared_target_host,
            target_port=self.cloudflared_target_port,
            foreground=self.cloudflared_foreground,
            timeouts=timeouts,
        )

    def tunnel_descriptors(self) -> list[TunnelDescriptor]:
        return [self.descriptor(kind) for kind in TunnelKind]

    def validate_for_run(self) -> None:
        """Check cross-field requirements before any side effect.

        Raises:
            ConfigurationError: Listing every problem found.
        """
        errors: list[str] = []

        if not self.ssh_public_key:
            errors.append("PIPELINE_SSH_PUBKEY is required")

        if self.ssh_port_timeout_ms < MIN_PORT_TIMEOUT_MS:
            errors.append(f"SSH_PORT_TIMEOUT must be >= {MIN_PORT_TIMEOUT_MS}ms")

        if self.cf_endpoint_timeout_ms < MIN_CF_ENDPOINT_TIMEOUT_MS:
            errors.append(f"CF_ENDPOINT_TIMEOUT must be >= {MIN_CF_ENDPOINT_TIMEOUT_MS}ms")

        if self.cf_enabled and not self.cloudflared_api_key:
            errors.append("CLOUDFLARED_APIKEY is required when CF_ENABLE=1")

        if bool(self.rtdb_url) != bool(self.rtdb_id):
            errors.append("Both ENV_SSH_URLS and ENV_SSH_URLS_ID are required for RTDB persistence")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors),
                {"errors": errors},
            )


def _env_names(field_name: str) -> list[str]:
    alias = SetupSettings.model_fields[field_name].validation_alias
    if isinstance(alias, AliasChoices):
        return [str(choice) for choice in alias.choices]
    return [field_name]


def load_settings(config_file: str | Path | None = None, **overrides: Any) -> SetupSettings:
    """Load settings from an optional TOML file, the environment and overrides.

    Priority (highest to lowest):
    1. Explicit overrides (CLI arguments)
    2. Environment variables / .env
    3. Config file (top-level keys or a ``[relay]`` table, by field name)
    4. Default values

    Raises:
        ConfigurationError: If the file cannot be read or values are invalid.
    """
    import tomllib

    file_config: dict[str, Any] = {}
    if config_file:
        config_path = Path(config_file)
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
        file_config = dict(data.get("relay", data))

    # Drop file values the environment already provides
    environ = {k.upper() for k in os.environ}
    for key in list(file_config):
        if key not in SetupSettings.model_fields:
            file_config.pop(key)
            continue
        if any(name.upper() in environ for name in _env_names(key)):
            file_config.pop(key)

    values = {**file_config, **{k: v for k, v in overrides.items() if v is not None}}
    try:
        return SetupSettings(**values)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError(
            "Configuration validation failed:\n" + "\n".join(f"  - {p}" for p in problems),
            {"errors": problems},
        ) from e
