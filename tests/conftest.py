import pytest

from trackagent.agent import Agent


class FakeTransport:
    """Records what would have been sent and answers with a fixed status."""

    def __init__(self, status=202, available=True):
        self.status = status
        self.available = available
        self.posts: list[tuple[str, str]] = []
        self.beacons: list[str] = []

    def can_send(self):
        return self.available

    def post(self, url, body, on_complete=None):
        self.posts.append((url, body))
        if on_complete is not None:
            on_complete(self.status)

    def beacon(self, url, on_complete=None):
        self.beacons.append(url)
        if on_complete is not None:
            on_complete(200)


class ManualScheduler:
    """Holds deferred calls until the test runs them."""

    def __init__(self):
        self.pending = []

    def defer(self, fn, *args):
        self.pending.append((fn, args))

    def run_pending(self):
        pending, self.pending = self.pending, []
        for fn, args in pending:
            fn(*args)


@pytest.fixture
def fake_time():
    return [0.0]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def make_agent(transport, scheduler, fake_time):
    """Build agents that share the fake host and are uninstalled after the test."""
    agents = []

    def factory(**options):
        agent = Agent(transport=transport, scheduler=scheduler, time_func=lambda: fake_time[0])
        agents.append(agent)
        if options:
            options.setdefault("token", "test-token")
            # Keep host hooks off unless a test asks for them.
            for section in ("callback", "console", "network", "window"):
                options.setdefault(section, {"enabled": False})
            options["window"].setdefault("promise", False)
            agent.install(options)
        return agent

    yield factory
    for agent in agents:
        agent.uninstall()


@pytest.fixture
def agent(make_agent):
    return make_agent(token="test-token")
