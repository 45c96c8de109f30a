"""Tests for startup driver selection."""

from cloudbay.adapters.driver import ContainerDriver, LibvirtDriver, create_driver
from cloudbay.app.config import DriverConfig, Settings


def test_docker_is_default(settings: Settings) -> None:
    driver = create_driver(settings)

    assert isinstance(driver, ContainerDriver)
    assert driver.info().supports_snapshots is True
    assert driver.info().deploys_over_ssh is False


def test_libvirt_mode(settings: Settings) -> None:
    settings = settings.model_copy(update={"driver": DriverConfig(mode="libvirt")})

    driver = create_driver(settings)

    assert isinstance(driver, LibvirtDriver)
    assert driver.info().mode == "libvirt"
    assert driver.info().deploys_over_ssh is True
