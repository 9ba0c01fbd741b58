import pytest

from tagship.ids import new_release_id
from tagship.state import create_release_dir


@pytest.fixture
def tagship_home(tmp_path, monkeypatch):
    """Use a temporary directory as TAGSHIP_HOME."""
    monkeypatch.setenv("TAGSHIP_HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def release_id(tagship_home):
    release_id = new_release_id()
    create_release_dir(release_id)
    return release_id
