"""cloud-init seed generation and base cloud image download for VM guests."""

import asyncio
import logging
import os
from pathlib import Path

import httpx
import yaml

from cloudbay.app.config import LibvirtConfig, get_settings
from cloudbay.core.errors import DriverError
from cloudbay.infra.process import run_command

logger = logging.getLogger(__name__)

NODE_SETUP_URL = "https://deb.nodesource.com/setup_18.x"


def build_meta_data(instance_name: str, instance_id: str) -> dict:
    return {"instance-id": instance_id, "local-hostname": instance_name}


def build_user_data(instance_name: str, public_key: str, user: str) -> dict:
    """Guest bootstrap: deploy user with sudo and key, toolchain, Node 18."""
    app_dir = f"/home/{user}/app"
    return {
        "users": [
            {
                "name": user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": [public_key],
            }
        ],
        "package_update": True,
        "package_upgrade": True,
        "packages": ["curl", "git", "wget", "build-essential"],
        "runcmd": [
            f"curl -fsSL {NODE_SETUP_URL} | bash -",
            "apt-get install -y nodejs",
            "npm config set unsafe-perm true",
            f"mkdir -p {app_dir}",
            f"chown {user}:{user} {app_dir}",
            "setcap 'cap_net_bind_service=+ep' /usr/bin/node || true",
            f'echo "Cloud-init completed for {instance_name}" > /var/log/cloud-init-done.log',
        ],
    }


def render_user_data(data: dict) -> str:
    # cloud-init only honours user-data starting with this header
    return "#cloud-config\n" + yaml.safe_dump(data, sort_keys=False)


class CloudInitBuilder:
    """Writes seed files and packs them into a NoCloud ISO."""

    def __init__(self, config: LibvirtConfig | None = None, user: str | None = None) -> None:
        self._config = config or get_settings().libvirt
        self._user = user or get_settings().ssh.user

    def seed_path(self, instance_name: str) -> str:
        return os.path.join(self._config.iso_dir, f"{instance_name}-cidata.iso")

    async def create_seed(self, instance_name: str, instance_id: str, public_key: str) -> str:
        """Render meta/user data and build the seed ISO with cloud-localds."""
        cloud_init_dir = Path(self._config.cloud_init_dir)
        meta_file = cloud_init_dir / f"{instance_name}-meta.yaml"
        user_file = cloud_init_dir / f"{instance_name}-user.yaml"
        iso_file = self.seed_path(instance_name)

        def _write() -> None:
            cloud_init_dir.mkdir(parents=True, exist_ok=True)
            Path(self._config.iso_dir).mkdir(parents=True, exist_ok=True)
            meta_file.write_text(
                yaml.safe_dump(build_meta_data(instance_name, instance_id), sort_keys=False)
            )
            user_file.write_text(
                render_user_data(build_user_data(instance_name, public_key, self._user))
            )

        await asyncio.to_thread(_write)
        await run_command(
            ["cloud-localds", iso_file, str(user_file), str(meta_file)],
            timeout=self._config.command_timeout,
        )
        logger.info("Cloud-init seed created: %s", iso_file)
        return iso_file

    async def remove_seed(self, instance_name: str) -> None:
        paths = [
            Path(self.seed_path(instance_name)),
            Path(self._config.cloud_init_dir) / f"{instance_name}-meta.yaml",
            Path(self._config.cloud_init_dir) / f"{instance_name}-user.yaml",
        ]
        for path in paths:
            await asyncio.to_thread(path.unlink, missing_ok=True)

    async def ensure_cloud_image(self) -> str:
        """Download the base cloud image once; later calls reuse it."""
        image_path = Path(self._config.cloud_image_path)
        if image_path.exists():
            return str(image_path)

        logger.info("Downloading cloud image: %s", self._config.cloud_image_url)
        partial = image_path.with_suffix(image_path.suffix + ".part")
        await asyncio.to_thread(image_path.parent.mkdir, parents=True, exist_ok=True)
        try:
            async with httpx.AsyncClient(
                timeout=self._config.download_timeout, follow_redirects=True
            ) as client:
                async with client.stream("GET", self._config.cloud_image_url) as resp:
                    resp.raise_for_status()
                    with partial.open("wb") as fh:
                        async for chunk in resp.aiter_bytes(1024 * 1024):
                            fh.write(chunk)
        except (httpx.HTTPError, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise DriverError(f"Cloud image download failed: {exc}") from exc

        partial.rename(image_path)
        logger.info("Cloud image downloaded: %s", image_path)
        return str(image_path)
