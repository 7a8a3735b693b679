"""Tests for the transmission pipeline."""

import json
import threading
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from trackagent.assembler import ReportPayload
from trackagent.config import DEFAULT_CONFIG, build_config
from trackagent.transmitter import Channel, HttpTransport, Transmitter
from trackagent.version import __version__

from conftest import FakeTransport


def payload():
    return ReportPayload(entry="direct", name="Error", message="boom")


def query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def config():
    return build_config({"token": "abc"})[0]


class TestChannel:
    def test_disable_is_one_way(self):
        channel = Channel("error")
        channel.disable("status 500")
        channel.disable("again")
        assert channel.enabled is False


class TestEndpoints:
    def test_error_endpoint_default(self, config):
        transmitter = Transmitter(lambda: config, FakeTransport(), secure=True)
        url = transmitter.error_endpoint("abc")
        assert url.startswith(DEFAULT_CONFIG.error_url + "?")
        assert query(url) == {"token": "abc", "v": __version__}

    def test_error_endpoint_without_ssl(self, config):
        transmitter = Transmitter(lambda: config, FakeTransport(), secure=False)
        assert transmitter.error_endpoint("abc").startswith(DEFAULT_CONFIG.error_no_ssl_url)

    def test_forwarding_domain(self):
        config = build_config({"token": "abc", "forwarding_domain": "errors.example.com"})[0]
        transmitter = Transmitter(lambda: config, FakeTransport(), secure=True)
        assert transmitter.error_endpoint("abc").startswith("https://errors.example.com/capture?")
        assert transmitter.usage_endpoint({}).startswith("https://errors.example.com/usage.gif")
        assert transmitter.fault_endpoint({}).startswith("https://errors.example.com/fault.gif")


class TestSendError:
    def test_posts_serialized_payload(self, config):
        transport = FakeTransport()
        transmitter = Transmitter(lambda: config, transport)
        transmitter.send_error(payload(), "abc")
        url, body = transport.posts[0]
        assert json.loads(body)["message"] == "boom"
        assert transmitter.error_channel.enabled

    def test_payload_serialized_at_send_time(self, config):
        transport = FakeTransport()
        report = payload()
        Transmitter(lambda: config, transport).send_error(report, "abc")
        report.message = "changed later"
        assert json.loads(transport.posts[0][1])["message"] == "boom"

    def test_bad_status_disables_channel(self, config):
        transport = FakeTransport(status=500)
        transmitter = Transmitter(lambda: config, transport)
        transmitter.send_error(payload(), "abc")
        assert transmitter.error_channel.enabled is False

        transmitter.send_error(payload(), "abc")
        assert len(transport.posts) == 1

    def test_raising_transport_disables_channel_and_reports_fault(self, config):
        class BrokenTransport(FakeTransport):
            def post(self, url, body, on_complete=None):
                raise OSError("socket closed")

        faults = []
        transmitter = Transmitter(lambda: config, BrokenTransport(), on_fault=faults.append)
        transmitter.send_error(payload(), "abc")
        assert transmitter.error_channel.enabled is False
        assert isinstance(faults[0], OSError)

    def test_unavailable_transport_starts_disabled(self, config):
        transport = FakeTransport(available=False)
        transmitter = Transmitter(lambda: config, transport)
        transmitter.send_error(payload(), "abc")
        transmitter.send_usage({"token": "abc"})
        assert transport.posts == []
        assert transport.beacons == []


class TestBeacons:
    def test_usage_beacon(self, config):
        transport = FakeTransport()
        Transmitter(lambda: config, transport).send_usage({"token": "abc", "application": "app"})
        assert query(transport.beacons[0]) == {"token": "abc", "application": "app"}

    def test_fault_beacons_are_throttled(self, config):
        transport = FakeTransport()
        transmitter = Transmitter(lambda: config, transport, time_func=lambda: 0.0)
        for n in range(15):
            transmitter.send_fault({"msg": str(n)})
        assert len(transport.beacons) == 10

    def test_failed_fault_beacon_does_not_reenter_fault_path(self, config):
        class BrokenTransport(FakeTransport):
            def beacon(self, url, on_complete=None):
                raise OSError("down")

        faults = []
        transmitter = Transmitter(lambda: config, BrokenTransport(), on_fault=faults.append)
        transmitter.send_fault({"msg": "x"})
        assert faults == []
        assert transmitter.fault_channel.enabled is False


class TestHttpTransport:
    def test_request_failure_reports_none(self, monkeypatch):
        def fail(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(requests, "request", fail)
        assert HttpTransport()._request("GET", "http://127.0.0.1:1/usage.gif", None) is None

    def test_request_returns_status(self, monkeypatch):
        class Response:
            status_code = 202

        seen = {}

        def fake_request(method, url, data=None, headers=None, timeout=None):
            seen.update(method=method, url=url, data=data, headers=headers)
            return Response()

        monkeypatch.setattr(requests, "request", fake_request)
        assert HttpTransport()._request("POST", "http://collector/capture", "{}") == 202
        assert seen["headers"] == {"Content-Type": "text/plain"}

    def test_unexpected_failure_completes_and_reports_fault(self, monkeypatch):
        def broken(*args, **kwargs):
            raise ValueError("transport bug")

        monkeypatch.setattr(requests, "request", broken)
        done = threading.Event()
        statuses, faults = [], []

        def on_fault(exc):
            faults.append(exc)
            done.set()

        HttpTransport(on_fault=on_fault).post("http://collector/capture", "{}", statuses.append)
        assert done.wait(2.0)
        assert statuses == [None]
        assert str(faults[0]) == "transport bug"

    def test_unexpected_failure_disables_channel_and_reaches_fault_handler(self, monkeypatch, config):
        def broken(*args, **kwargs):
            raise ValueError("transport bug")

        monkeypatch.setattr(requests, "request", broken)
        done = threading.Event()
        faults = []

        def on_fault(exc):
            faults.append(exc)
            done.set()

        transmitter = Transmitter(lambda: config, on_fault=on_fault)
        transmitter.send_error(payload(), "abc")
        assert done.wait(2.0)
        assert transmitter.error_channel.enabled is False
        assert str(faults[0]) == "transport bug"
