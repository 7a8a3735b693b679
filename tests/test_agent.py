"""End-to-end tests for the agent: install surface, aggregation pipeline, and fault handling."""

import json
import logging
import sys
import threading
from urllib.parse import parse_qs, urlsplit

import pytest

from trackagent.event_log import CONSOLE
from trackagent.normalizer import is_caught


def sent(transport):
    return [json.loads(body) for _, body in transport.posts]


def raise_error(message="boom"):
    raise ValueError(message)


class TestInstall:
    def test_install_requires_token(self, make_agent, caplog):
        agent = make_agent()
        with caplog.at_level(logging.WARNING):
            assert agent.install({"application": "x"}) is False
        assert not agent.is_installed()
        assert "[trackagent] missing token" in caplog.text

    def test_install_once(self, agent, caplog):
        assert agent.is_installed()
        with caplog.at_level(logging.WARNING):
            assert agent.install(token="other") is False
        assert "already installed" in caplog.text
        assert agent.config.token == "test-token"

    def test_install_sends_usage_beacon_after_deferral(self, agent, transport, scheduler):
        assert transport.beacons == []
        scheduler.run_pending()
        params = parse_qs(urlsplit(transport.beacons[0]).query)
        assert params["token"] == ["test-token"]
        assert params["correlationId"] == [agent.customer.correlation_id]

    def test_disabled_install(self, make_agent, transport, caplog):
        agent = make_agent(enabled=False)
        assert not agent.is_installed()
        with caplog.at_level(logging.WARNING):
            agent.track("ignored")
        assert transport.posts == []
        assert "must be installed" not in caplog.text

    def test_track_before_install_warns(self, make_agent, transport, caplog):
        agent = make_agent()
        with caplog.at_level(logging.WARNING):
            agent.track("too early")
        assert "[trackagent] agent must be installed" in caplog.text
        assert transport.posts == []

    def test_invalid_option_still_installs(self, make_agent, caplog):
        with caplog.at_level(logging.WARNING):
            agent = make_agent(colour="blue")
        assert agent.is_installed()
        assert "invalid config" in caplog.text

    def test_uninstall_restores_host(self, make_agent):
        original = threading.Thread.__init__
        agent = make_agent(callback={"enabled": True})
        assert threading.Thread.__init__ is not original
        agent.uninstall()
        assert threading.Thread.__init__ is original
        assert not agent.is_installed()

    def test_install_from_environment(self, make_agent, tmp_path):
        agent = make_agent()
        path = tmp_path / "agent.yaml"
        path.write_text(
            "application: billing\ncallback: {enabled: false}\nconsole: {enabled: false}\n"
            "network: {enabled: false}\nwindow: {enabled: false, promise: false}\n"
        )
        assert agent.install_from_environment({"TRACKAGENT_CONFIG": str(path), "TRACKAGENT_TOKEN": "env"})
        assert agent.config.token == "env"
        assert agent.config.application == "billing"


class TestTrack:
    def test_track_plain_string(self, agent, transport):
        agent.track("plain string")
        report = sent(transport)[0]
        assert report["entry"] == "direct"
        assert report["name"] == "Error"
        assert report["message"] == "plain string"
        assert "test_track_plain_string" in report["stack"]

    def test_track_raised_exception(self, agent, transport):
        try:
            raise_error("bad input")
        except ValueError as exc:
            agent.track(exc)
        report = sent(transport)[0]
        assert report["name"] == "ValueError"
        assert report["message"] == "bad input"
        assert report["file"].endswith("test_agent.py")
        assert report["line"]

    def test_report_sent_to_error_endpoint(self, agent, transport):
        agent.track("x")
        url = transport.posts[0][0]
        assert url.startswith(agent.config.error_url)
        assert parse_qs(urlsplit(url).query)["token"] == ["test-token"]

    def test_report_carries_context(self, make_agent, transport):
        agent = make_agent(application="billing", user_id="u1")
        agent.add_metadata("tenant", "acme")
        agent.add_metadata("gone", "x")
        agent.remove_metadata("gone")
        agent.track("x")
        report = sent(transport)[0]
        assert report["customer"]["application"] == "billing"
        assert report["customer"]["userId"] == "u1"
        assert report["metadata"] == [{"key": "tenant", "value": "acme"}]
        assert report["environment"]["platform"] == sys.platform
        assert report["agentPlatform"] == "python"

    def test_telemetry_attached_then_cleared(self, agent, transport):
        agent.console.info("loading cart")
        agent.record_navigation("route", "/cart", "/checkout")
        agent.record_action("click", "button", {"id": "pay"})
        agent.track("first")
        agent.track("second")
        first, second = sent(transport)
        assert first["console"][0]["message"] == "loading cart"
        assert first["nav"][0]["to"] == "/checkout"
        assert first["visitor"][0]["element"]["attributes"] == {"id": "pay"}
        assert second["console"] == []
        assert second["nav"] == []

    def test_event_log_bounded(self, agent, transport):
        for n in range(31):
            agent.console.log(f"line {n}")
        assert len(agent.log) == 30
        agent.track("x")
        messages = [entry["message"] for entry in sent(transport)[0]["console"]]
        assert "line 0" not in messages
        assert messages[-1] == "line 30"


class TestGate:
    def test_duplicate_sent_once(self, agent, transport):
        for _ in range(2):
            agent.track(ValueError("same"))
        assert len(transport.posts) == 1

    def test_dedupe_can_be_turned_off_at_runtime(self, agent, transport):
        assert agent.configure({"dedupe": False})
        for _ in range(2):
            agent.track(ValueError("same"))
        assert len(transport.posts) == 2

    def test_throttle_and_carry_count(self, agent, transport, fake_time):
        for n in range(11):
            agent.track(f"error {n}")
        assert len(transport.posts) == 10

        fake_time[0] = 5.0
        agent.track("after the storm")
        reports = sent(transport)
        assert len(reports) == 11
        assert reports[-1]["throttled"] == 1
        assert reports[0]["throttled"] == 0


class TestHook:
    def test_hook_veto(self, make_agent, transport):
        seen = []

        def on_error(payload, error):
            seen.append((payload.message, error))
            return False

        agent = make_agent(on_error=on_error)
        agent.console.info("kept")
        agent.track("vetoed")
        assert transport.posts == []
        assert seen == [("vetoed", "vetoed")]
        assert len(agent.log.all(CONSOLE)) == 1

    def test_vetoed_report_does_not_suppress_next_identical_one(self, make_agent, transport):
        decisions = iter([False, True])
        agent = make_agent(on_error=lambda payload, error: next(decisions))
        for _ in range(2):
            agent.track(ValueError("same"))
        assert [report["message"] for report in sent(transport)] == ["same"]

    def test_hook_can_edit_payload(self, make_agent, transport):
        def on_error(payload, error):
            payload.metadata.append({"key": "edited", "value": "yes"})
            return True

        agent = make_agent(on_error=on_error)
        agent.track("x")
        assert {"key": "edited", "value": "yes"} in sent(transport)[0]["metadata"]

    def test_hook_failure_sends_payload_and_reports_hook_error(self, make_agent, transport, scheduler):
        def on_error(payload, error):
            raise KeyError("hook broke")

        agent = make_agent(on_error=on_error)
        scheduler.run_pending()
        agent.track("original")
        first = sent(transport)[0]
        assert first["message"] == "original"
        assert first["console"][-1]["severity"] == "error"
        assert "hook broke" in first["console"][-1]["message"]

        scheduler.run_pending()
        second = sent(transport)[1]
        assert second["entry"] == "catch"
        assert second["name"] == "KeyError"

    def test_failure_logged_inside_hook_is_dropped(self, make_agent, transport):
        hook_logger = logging.getLogger("hooktest")

        def on_error(payload, error):
            hook_logger.error("hook saw %s", payload.message)
            return True

        agent = make_agent(on_error=on_error, console={"enabled": True})
        agent.track("outer")
        assert [report["message"] for report in sent(transport)] == ["outer"]


class TestSerializer:
    def test_custom_serializer(self, make_agent, transport):
        agent = make_agent(serialize=lambda value: f"custom:{value!r}")
        agent.track(42)
        assert sent(transport)[0]["message"] == "custom:42"

    def test_failing_serializer_falls_back_and_reports(self, make_agent, transport):
        def serialize(value):
            raise TypeError("cannot serialize")

        agent = make_agent(serialize=serialize)
        agent.track(42)
        messages = [report["message"] for report in sent(transport)]
        assert "cannot serialize" in messages
        assert "42" in messages


class TestWatchers:
    def test_watch_reports_and_reraises(self, agent, transport):
        watched = agent.watch(raise_error)
        with pytest.raises(ValueError) as info:
            watched("from watch")
        assert is_caught(info.value)
        report = sent(transport)[0]
        assert report["entry"] == "catch"
        assert report["message"] == "from watch"

    def test_attempt(self, agent, transport):
        with pytest.raises(ValueError):
            agent.attempt(raise_error, None, "from attempt")
        assert sent(transport)[0]["message"] == "from attempt"

    def test_watch_all(self, agent, transport):
        class Service:
            def fail(self):
                raise RuntimeError("service failed")

        service = agent.watch_all(Service())
        with pytest.raises(RuntimeError):
            service.fail()
        assert sent(transport)[0]["message"] == "service failed"

    def test_thread_failure_reported_once(self, make_agent, transport):
        previous = threading.excepthook
        threading.excepthook = lambda args: None
        agent = None
        try:
            agent = make_agent(callback={"enabled": True}, window={"enabled": True})
            thread = threading.Thread(target=raise_error, args=("in thread",))
            thread.start()
            thread.join()
        finally:
            if agent is not None:
                agent.uninstall()
            threading.excepthook = previous
        reports = sent(transport)
        assert len(reports) == 1
        assert reports[0]["entry"] == "catch"

    def test_uncaught_thread_failure_reported_by_window(self, make_agent, transport):
        previous = threading.excepthook
        threading.excepthook = lambda args: None
        agent = None
        try:
            agent = make_agent(window={"enabled": True})
            thread = threading.Thread(target=raise_error, args=("unwatched",))
            thread.start()
            thread.join()
        finally:
            if agent is not None:
                agent.uninstall()
            threading.excepthook = previous
        report = sent(transport)[0]
        assert report["entry"] == "window"
        assert report["message"] == "unwatched"

    def test_bind_stack(self, make_agent, transport):
        agent = make_agent(callback={"enabled": True, "bind_stack": True})
        watched = agent.watch(raise_error)
        with pytest.raises(ValueError):
            watched()
        report = sent(transport)[0]
        assert "test_bind_stack" in report["bindStack"]
        assert report["bindTime"]

    def test_console_error_reported(self, make_agent, transport):
        make_agent(console={"enabled": True})
        logging.getLogger("shop.checkout").error("payment declined")
        report = sent(transport)[0]
        assert report["entry"] == "console"
        assert report["message"] == "payment declined"

    def test_configure_refuses_install_only(self, agent, caplog):
        with caplog.at_level(logging.WARNING):
            assert agent.configure({"token": "new"}) is False
        assert agent.config.token == "test-token"


class TestFaults:
    def test_transport_failure_goes_to_fault_beacon(self, agent, transport, monkeypatch):
        def broken_post(url, body, on_complete=None):
            raise OSError("socket closed")

        monkeypatch.setattr(transport, "post", broken_post)
        agent.track("x")
        agent.track("y")

        fault_urls = [url for url in transport.beacons if "fault.gif" in url]
        assert len(fault_urls) == 1
        params = parse_qs(urlsplit(fault_urls[0]).query)
        assert params["msg"] == ["socket closed"]
        assert params["token"] == ["test-token"]
        assert agent.transmitter.error_channel.enabled is False

    def test_fault_before_install_uses_fresh_transmitter(self, make_agent, transport):
        agent = make_agent()
        agent.on_fault(RuntimeError("early"))
        assert len(transport.beacons) == 1
        assert "fault.gif" in transport.beacons[0]

    def test_bad_status_disables_error_channel(self, agent, transport):
        transport.status = 403
        agent.track("first")
        transport.status = 202
        agent.track("second")
        assert len(transport.posts) == 1

    def test_broken_provider_becomes_fault(self, agent, transport, monkeypatch):
        def broken():
            raise RuntimeError("provider broke")

        monkeypatch.setattr(agent.environment, "report", broken)
        agent.track("x")
        assert transport.posts == []
        assert any("fault.gif" in url for url in transport.beacons)
