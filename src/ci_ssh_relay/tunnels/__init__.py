"""Tunnel backends."""

from ..ci import CIEnvironment
from ..config import SetupSettings
from ..models import TunnelKind
from ..process import ProcessRunner
from ..retry import BackoffExecutor
from .base import TunnelPlugin, TunnelProcess
from .cloudflare import CloudflareTunnel
from .pinggy import PinggyTunnel
from .sshj import SshjTunnel

__all__ = [
    "CloudflareTunnel",
    "PinggyTunnel",
    "SshjTunnel",
    "TunnelPlugin",
    "TunnelProcess",
    "build_tunnels",
]


def build_tunnels(
    settings: SetupSettings,
    runner: ProcessRunner,
    ci: CIEnvironment,
    executor: BackoffExecutor,
) -> list[TunnelPlugin]:
    """All tunnel backends, in reporting order (Pinggy, SSH-J, Cloudflare)."""
    return [
        PinggyTunnel(
            settings.descriptor(TunnelKind.PINGGY),
            runner,
            region_host=settings.pinggy_region_host,
        ),
        SshjTunnel(
            settings.descriptor(TunnelKind.SSHJ),
            runner,
            ci,
            host=settings.sshj_host,
            namespace=settings.sshj_namespace,
            device=settings.sshj_device,
            device_port=settings.sshj_device_port,
        ),
        CloudflareTunnel(
            settings.descriptor(TunnelKind.CLOUDFLARE),
            runner,
            ci,
            executor,
            api_key=settings.cloudflared_api_key,
            config_template=settings.cloudflared_template,
            tunnel_name=settings.cloudflared_tunnel_name,
            binary_path=settings.cloudflared_path,
            download_url=settings.cloudflared_download_url,
        ),
    ]
