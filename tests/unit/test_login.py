"""Unit tests for stored cluster logins."""

import stat

import pytest

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.login import ClusterLogin, LoginStore


@pytest.fixture
def store(tmp_path):
    return LoginStore(tmp_path / "logins")


def test_ensure_generates_and_saves(store):
    """Test that a cluster without a login gets a generated password written to disk."""
    login = store.ensure("lab")

    assert login.admin_username == "sysadmin"
    assert len(login.admin_password) >= 24
    assert store.load("lab") == login


def test_ensure_reuses_stored_password(store):
    first = store.ensure("lab")
    second = store.ensure("lab")

    assert second.admin_password == first.admin_password


def test_explicit_password_replaces_stored(store):
    """Test that a password given by the operator wins and is remembered."""
    store.ensure("lab")

    login = store.ensure("lab", admin_password="s3cret")

    assert login.admin_password == "s3cret"
    assert store.ensure("lab").admin_password == "s3cret"


def test_username_change_keeps_password(store):
    first = store.ensure("lab")

    login = store.ensure("lab", admin_username="admin")

    assert login.admin_username == "admin"
    assert login.admin_password == first.admin_password


def test_login_file_is_private(store):
    path = store.save(ClusterLogin(cluster="lab", admin_password="s3cret"))

    assert path == store.path("lab")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_load_missing(store):
    assert store.load("lab") is None


def test_load_invalid_file(store):
    """Test that an unreadable login file is reported instead of silently replaced."""
    store.folder.mkdir(parents=True)
    store.path("lab").write_text("admin_password: [unclosed\n")

    with pytest.raises(ConfigurationError, match="not valid YAML"):
        store.load("lab")

    store.path("lab").write_text("admin_username: sysadmin\n")
    with pytest.raises(ConfigurationError, match="invalid"):
        store.ensure("lab")


def test_remove(store):
    store.ensure("lab")

    store.remove("lab")
    store.remove("lab")

    assert store.load("lab") is None


def test_default_folder(login_folder):
    """Test that stores without a folder use the configured default location."""
    assert LoginStore().path("lab") == login_folder / "lab.yaml"
