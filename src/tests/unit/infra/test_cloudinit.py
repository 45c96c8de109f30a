"""Tests for cloud-init seed rendering."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import yaml

from cloudbay.app.config import LibvirtConfig
from cloudbay.infra.cloudinit import (
    CloudInitBuilder,
    build_meta_data,
    build_user_data,
    render_user_data,
)


class TestUserData:
    def test_deploy_user_gets_key(self) -> None:
        data = build_user_data("nextjs-vm-1", "ssh-rsa AAAA test", "deploy")

        user = data["users"][0]
        assert user["name"] == "deploy"
        assert user["ssh_authorized_keys"] == ["ssh-rsa AAAA test"]
        assert "git" in data["packages"]
        assert "mkdir -p /home/deploy/app" in data["runcmd"]

    def test_render_has_cloud_config_header(self) -> None:
        rendered = render_user_data(build_user_data("vm", "key", "deploy"))

        assert rendered.startswith("#cloud-config\n")
        assert yaml.safe_load(rendered)["users"][0]["name"] == "deploy"

    def test_meta_data(self) -> None:
        assert build_meta_data("vm", "vm") == {"instance-id": "vm", "local-hostname": "vm"}


class TestCloudInitBuilder:
    async def test_create_seed(self, tmp_path: Path) -> None:
        config = LibvirtConfig(
            iso_dir=str(tmp_path / "isos"), cloud_init_dir=str(tmp_path / "cloud-init")
        )
        builder = CloudInitBuilder(config, user="deploy")

        with patch(
            "cloudbay.infra.cloudinit.run_command", new_callable=AsyncMock
        ) as mock_run:
            iso = await builder.create_seed("vm1", "vm1", "ssh-ed25519 KEY")

        assert iso == str(tmp_path / "isos" / "vm1-cidata.iso")
        user_file = tmp_path / "cloud-init" / "vm1-user.yaml"
        assert "ssh-ed25519 KEY" in user_file.read_text()
        args = mock_run.await_args.args[0]
        assert args == [
            "cloud-localds",
            iso,
            str(user_file),
            str(tmp_path / "cloud-init" / "vm1-meta.yaml"),
        ]

    async def test_cloud_image_already_present(self, tmp_path: Path) -> None:
        image = tmp_path / "base.img"
        image.write_bytes(b"qcow")
        builder = CloudInitBuilder(LibvirtConfig(cloud_image_path=str(image)), user="deploy")

        assert await builder.ensure_cloud_image() == str(image)
