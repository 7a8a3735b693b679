"""In-process error and telemetry capture agent.

The process-wide :class:`~trackagent.agent.Agent` (``default_agent``) backs the module-level
functions::

    import trackagent

    trackagent.install(token="abc123", application="billing")
    trackagent.track(ValueError("bad input"))
"""

from trackagent.agent import Agent
from trackagent.version import __version__

default_agent = Agent()

install = default_agent.install
install_from_environment = default_agent.install_from_environment
is_installed = default_agent.is_installed
configure = default_agent.configure
track = default_agent.track
watch = default_agent.watch
watch_all = default_agent.watch_all
attempt = default_agent.attempt
add_metadata = default_agent.add_metadata
remove_metadata = default_agent.remove_metadata
record_navigation = default_agent.record_navigation
record_action = default_agent.record_action
console = default_agent.console

__all__ = [
    "Agent",
    "__version__",
    "add_metadata",
    "attempt",
    "configure",
    "console",
    "default_agent",
    "install",
    "install_from_environment",
    "is_installed",
    "record_action",
    "record_navigation",
    "remove_metadata",
    "track",
    "watch",
    "watch_all",
]
