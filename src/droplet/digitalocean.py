#!/usr/bin/env python3
"""
DigitalOcean API Client — the game droplet's cloud provider

Wraps the public DigitalOcean API (api.digitalocean.com/v2) for the
three calls the lifecycle controller needs.

Implements:
- create_droplet() -> droplet id
- get_droplet(droplet_id) -> DropletInfo (status + public IPv4)
- delete_droplet(droplet_id) -> ActionResult
"""

import logging
import time
import requests
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, asdict

from .config import DigitalOceanConfig

logger = logging.getLogger(__name__)

BASE_URL = "https://api.digitalocean.com"


@dataclass
class DropletInfo:
    """Droplet state as reported by DigitalOcean."""
    id: int
    name: str
    status: str
    ipv4: Optional[str] = None
    region: Optional[str] = None
    size: Optional[str] = None
    created_at: Optional[str] = None
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass
class ActionResult:
    """Result of a DigitalOcean API action."""
    success: bool
    action: str
    droplet_id: Optional[int] = None
    message: str = ""
    status_code: Optional[int] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DigitalOceanClient:
    """
    DigitalOcean droplet API client.

    Auth: Bearer token from the config (DIGITALOCEAN_TOKEN).
    Every call goes through ``_request``, which never raises: transport
    errors are logged, counted and turned into ``None``.
    """

    DEFAULT_TIMEOUT = 30
    API_PREFIX = "/v2"

    def __init__(self, config: DigitalOceanConfig, timeout: int = None):
        self.config = config
        self.api_token = config.token
        self.timeout = timeout or self.DEFAULT_TIMEOUT

        if not self.api_token:
            logger.warning("No DigitalOcean API token configured. Set DIGITALOCEAN_TOKEN env var.")

        self._request_count = 0
        self._error_count = 0

        logger.info(
            f"DigitalOceanClient initialized "
            f"(region={config.region}, size={config.size}, "
            f"token={'configured' if self.api_token else 'missing'})"
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(
        self, method: str, path: str, **kwargs
    ) -> Optional[requests.Response]:
        """Make authenticated request to the DigitalOcean API. Returns None on failure."""
        url = f"{BASE_URL}{self.API_PREFIX}{path}"
        self._request_count += 1

        try:
            resp = requests.request(
                method, url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
            if resp.status_code >= 400:
                logger.warning(
                    f"DigitalOcean API error: {method} {path} -> "
                    f"{resp.status_code} {resp.text[:300]}"
                )
                self._error_count += 1
            return resp
        except requests.Timeout:
            logger.error(f"DigitalOcean API timeout: {method} {path}")
            self._error_count += 1
            return None
        except requests.ConnectionError:
            logger.error(f"DigitalOcean API connection error: {method} {path}")
            self._error_count += 1
            return None
        except requests.RequestException as e:
            logger.error(f"DigitalOcean API unexpected error: {method} {path}: {e}")
            self._error_count += 1
            return None

    # ── Droplet Lifecycle ────────────────────────────────────────

    def _create_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "name": self.config.name,
            "region": self.config.region,
            "size": self.config.size,
            "image": self.config.image,
        }
        if self.config.ssh_keys:
            body["ssh_keys"] = list(self.config.ssh_keys)
        if self.config.volumes:
            body["volumes"] = list(self.config.volumes)
        if self.config.tags:
            body["tags"] = list(self.config.tags)
        return body

    def create_droplet(self) -> Optional[int]:
        """Create the game droplet. Returns its id, or None on failure."""
        resp = self._request("POST", "/droplets", json=self._create_body())
        if resp is None or resp.status_code not in (200, 201, 202):
            return None
        try:
            droplet_id = int(resp.json()["droplet"]["id"])
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Failed to parse created droplet: {e}")
            return None
        logger.info(f"Requested droplet {self.config.name} (id={droplet_id})")
        return droplet_id

    def get_droplet(self, droplet_id: int) -> Optional[DropletInfo]:
        """Get the current status and address of a droplet."""
        resp = self._request("GET", f"/droplets/{droplet_id}")
        if resp is None or resp.status_code != 200:
            return None
        try:
            return self._parse_droplet(resp.json()["droplet"])
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Failed to parse droplet {droplet_id}: {e}")
            return None

    def delete_droplet(self, droplet_id: int) -> ActionResult:
        """Destroy a droplet. DigitalOcean answers 204 on success."""
        resp = self._request("DELETE", f"/droplets/{droplet_id}")
        if resp is None:
            return ActionResult(
                success=False, action="delete", droplet_id=droplet_id,
                message="Connection failed",
            )
        success = resp.status_code in (202, 204)
        return ActionResult(
            success=success,
            action="delete",
            droplet_id=droplet_id,
            message="" if success else resp.text[:200],
            status_code=resp.status_code,
        )

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _public_ipv4(networks: List[Dict[str, Any]]) -> Optional[str]:
        for network in networks:
            if network.get("type") == "public" and network.get("ip_address"):
                return network["ip_address"]
        return None

    @classmethod
    def _parse_droplet(cls, data: Dict[str, Any]) -> DropletInfo:
        """Parse API response into DropletInfo."""
        networks = (data.get("networks") or {}).get("v4") or []
        return DropletInfo(
            id=data.get("id", 0),
            name=data.get("name", ""),
            status=data.get("status", "unknown"),
            ipv4=cls._public_ipv4(networks),
            region=data.get("region", {}).get("slug") if isinstance(data.get("region"), dict) else data.get("region"),
            size=data.get("size_slug"),
            created_at=data.get("created_at"),
            raw=data,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get client-side stats."""
        return {
            "token_configured": bool(self.api_token),
            "total_requests": self._request_count,
            "total_errors": self._error_count,
            "error_rate_percent": (
                round(self._error_count / self._request_count * 100, 1)
                if self._request_count > 0 else 0
            ),
        }
