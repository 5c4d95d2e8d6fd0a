import pytest

from extdebug.config import ServerConfig
from extdebug.session import DebugSession
from tests.fakes import FakeDriver, FakePage, three_buttons


@pytest.fixture
def config():
    return ServerConfig()


@pytest.fixture
def driver():
    fake = FakeDriver()
    fake.add_page(FakePage("tab-1", three_buttons()))
    return fake


@pytest.fixture
def session(driver, config):
    return DebugSession(driver, config, tab_id="tab-1")
