"""Tailscale sidecar containers exposing sandboxes over HTTPS on a tailnet.

Each sandbox may get a ``tailscale/tailscale`` sidecar that shares the app
container's network namespace and runs ``tailscale serve`` to proxy HTTPS
traffic to the application port on ``127.0.0.1``. The sidecar joins the
tailnet with a single-use, ephemeral, preauthorized auth key minted through
the Tailscale API with OAuth client credentials.
"""

import json
import re
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from config import Settings, settings as default_settings
from docker_api import DockerClient, DockerError
from models.schemas import Sandbox
from sandbox import tar_builder

logger = structlog.get_logger(__name__)

AUTH_KEY_EXPIRY_SECONDS = 300
STATE_DIR = "/var/lib/tailscale"
SERVE_CONFIG_PATH = "etc/tailscale/serve.json"


class TailscaleError(Exception):
    """The Tailscale API refused or failed a request."""


def build_hostname(sandbox: Sandbox) -> str:
    """Tailnet hostname: slugified sandbox name plus the first 8 chars of its id."""
    slug = re.sub(r"[^a-z0-9]+", "-", sandbox.name.lower()).strip("-")
    short_id = sandbox.id[:8]
    return f"{slug}-{short_id}" if slug else short_id


def build_url(hostname: str, tailnet_name: str) -> str:
    return f"https://{hostname}.{tailnet_name}"


def serve_config(app_port: int) -> dict[str, Any]:
    return {
        "TCP": {"443": {"HTTPS": True}},
        "Web": {
            "${TS_CERT_DOMAIN}:443": {
                "Handlers": {"/": {"Proxy": f"http://127.0.0.1:{app_port}"}},
            }
        },
    }


class TailscaleManager:
    """Creates, starts, stops and removes per-sandbox Tailscale sidecars.

    Attributes:
        docker: Docker client used for the sidecar container and volume.
        settings: Application settings holding the Tailscale credentials.
    """

    def __init__(
        self,
        docker: DockerClient,
        settings: Settings | None = None,
        *,
        http_transport_factory: Callable[[], httpx.AsyncBaseTransport] | None = None,
    ) -> None:
        self.docker = docker
        self.settings = settings or default_settings
        self._http_transport_factory = http_transport_factory

    @property
    def enabled(self) -> bool:
        return self.settings.tailscale_configured

    def container_name(self, sandbox_id: str) -> str:
        return f"{self.settings.resource_prefix}-ts-{sandbox_id}"

    def volume_name(self, sandbox_id: str) -> str:
        return f"{self.settings.resource_prefix}-ts-{sandbox_id}"

    def _http(self) -> httpx.AsyncClient:
        transport = self._http_transport_factory() if self._http_transport_factory else None
        return httpx.AsyncClient(
            base_url=self.settings.tailscale_api_base,
            transport=transport,
            timeout=self.settings.docker_request_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Tailscale API
    # ------------------------------------------------------------------

    async def _oauth_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            "/oauth/token",
            data={
                "client_id": self.settings.tailscale_oauth_client_id,
                "client_secret": self.settings.tailscale_oauth_client_secret,
                "grant_type": "client_credentials",
            },
        )
        if response.status_code != 200:
            raise TailscaleError(f"OAuth token request failed ({response.status_code})")
        return response.json()["access_token"]

    async def create_auth_key(self) -> str:
        """Mint a single-use, ephemeral, preauthorized auth key.

        Raises:
            TailscaleError: If the OAuth or key request is refused.
            httpx.HTTPError: On transport failure.
        """
        async with self._http() as client:
            token = await self._oauth_token(client)
            response = await client.post(
                "/tailnet/-/keys",
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "capabilities": {
                        "devices": {
                            "create": {
                                "reusable": False,
                                "ephemeral": True,
                                "preauthorized": True,
                                "tags": [self.settings.tailscale_tag],
                            }
                        }
                    },
                    "expirySeconds": AUTH_KEY_EXPIRY_SECONDS,
                },
            )
        if response.status_code != 200:
            raise TailscaleError(f"Auth key request failed ({response.status_code})")
        return response.json()["key"]

    # ------------------------------------------------------------------
    # Sidecar lifecycle
    # ------------------------------------------------------------------

    def _container_config(
        self, hostname: str, auth_key: str, app_container_id: str, volume: str
    ) -> dict[str, Any]:
        return {
            "Image": self.settings.tailscale_image,
            "Env": [
                f"TS_AUTHKEY={auth_key}",
                f"TS_HOSTNAME={hostname}",
                f"TS_STATE_DIR={STATE_DIR}",
                f"TS_SERVE_CONFIG=/{SERVE_CONFIG_PATH}",
                "TS_USERSPACE=false",
                f"TS_EXTRA_ARGS=--advertise-tags={self.settings.tailscale_tag}",
            ],
            "HostConfig": {
                "NetworkMode": f"container:{app_container_id}",
                "Binds": [f"{volume}:{STATE_DIR}"],
                "CapAdd": ["NET_ADMIN"],
                "Devices": [
                    {
                        "PathOnHost": "/dev/net/tun",
                        "PathInContainer": "/dev/net/tun",
                        "CgroupPermissions": "rwm",
                    }
                ],
            },
        }

    async def create_sidecar(
        self, sandbox: Sandbox, app_container_id: str
    ) -> tuple[str, str] | None:
        """Create and start the sidecar for ``sandbox``.

        Returns:
            ``(container_id, hostname)``, or None when Tailscale is disabled.

        Raises:
            TailscaleError, DockerError, httpx.HTTPError: On any failure. A
                partially created container is removed first; the state
                volume is kept for a retry.
        """
        if not self.enabled:
            return None

        hostname = build_hostname(sandbox)
        name = self.container_name(sandbox.id)
        volume = self.volume_name(sandbox.id)

        # Stale container from a previous failed attempt.
        await self.docker.remove_container(name, force=True)

        try:
            auth_key = await self.create_auth_key()
            await self.docker.pull_image(self.settings.tailscale_image)
            await self.docker.create_volume(volume)
            container_id = await self.docker.create_container(
                self._container_config(hostname, auth_key, app_container_id, volume),
                name=name,
            )
            archive = tar_builder.build(
                [(SERVE_CONFIG_PATH, json.dumps(serve_config(self.settings.app_service_port)))]
            )
            await self.docker.put_archive(container_id, "/", archive)
            await self.docker.start_container(container_id)
        except Exception as e:
            logger.error(
                "tailscale_sidecar_create_failed",
                sandbox_id=sandbox.id,
                error=str(e),
            )
            try:
                await self.docker.remove_container(name, force=True)
            except DockerError as cleanup_error:
                logger.warning(
                    "tailscale_sidecar_cleanup_failed",
                    sandbox_id=sandbox.id,
                    error=str(cleanup_error),
                )
            raise

        logger.info(
            "tailscale_sidecar_created",
            sandbox_id=sandbox.id,
            container_id=container_id[:12],
            hostname=hostname,
        )
        return container_id, hostname

    async def start_sidecar(self, sandbox: Sandbox) -> None:
        if sandbox.tailscale_container_id:
            await self.docker.start_container(sandbox.tailscale_container_id)

    async def stop_sidecar(self, sandbox: Sandbox) -> None:
        if sandbox.tailscale_container_id:
            await self.docker.stop_container(sandbox.tailscale_container_id, timeout=5)

    async def remove_sidecar(self, sandbox: Sandbox) -> None:
        """Stop and remove the sidecar container and its state volume.

        Absent resources count as removed.
        """
        if sandbox.tailscale_container_id:
            await self.docker.stop_container(sandbox.tailscale_container_id, timeout=5)
            await self.docker.remove_container(sandbox.tailscale_container_id, force=True)
        await self.docker.remove_volume(self.volume_name(sandbox.id))
        logger.info("tailscale_sidecar_removed", sandbox_id=sandbox.id)
