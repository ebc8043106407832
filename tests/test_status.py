# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring,protected-access
# pylint: disable=unused-argument,too-few-public-methods,no-member,use-implicit-booleaness-not-comparison,line-too-long
# pylint: disable=invalid-name,too-many-statements,too-many-instance-attributes,wrong-import-position,wrong-import-order
# pylint: disable=deprecated-module,too-many-locals,too-many-lines,attribute-defined-outside-init,unexpected-keyword-arg
# pylint: disable=duplicate-code
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

from helpers import make_gateway
from status import StatusReporter


def _bridge(gateways, publisher=None):
    return SimpleNamespace(
        gateways={g.gateway_id: g for g in gateways},
        discovery=SimpleNamespace(running=False, last_run=SimpleNamespace(records=[1, 2])),
        mqtt_publisher=publisher,
        scheduler=SimpleNamespace(generation=7),
    )


def test_build_status_payload():
    gateway, _timer, _clock = make_gateway({"Units": "1,2"})
    gateway.set_status("Comm error", failed=True)
    reporter = StatusReporter(_bridge([gateway]), interval_s=60)

    payload = reporter.build_status_payload()

    assert payload["gateways"] == 1
    assert payload["gateways_connected"] == 0
    assert payload["gateways_failed"] == ["gw1"]
    assert payload["units"] == 2
    assert payload["mqtt_connected"] is False
    assert payload["discovery_last_found"] == 2
    assert payload["scheduler_generation"] == 7


def test_publish_skipped_without_mqtt():
    publisher = MagicMock(namespace="wmp", client_id="bridge")
    publisher.is_ready.return_value = False
    gateway, _timer, _clock = make_gateway()
    StatusReporter(_bridge([gateway], publisher)).publish()
    publisher.publish_json.assert_not_called()


def test_publish_status_and_gateways():
    publisher = MagicMock(namespace="wmp", client_id="bridge")
    publisher.is_ready.return_value = True
    publisher.publish_gateway.side_effect = RuntimeError("broker hiccup")
    gateway, _timer, _clock = make_gateway()

    StatusReporter(_bridge([gateway], publisher)).publish()

    topic, payload = publisher.publish_json.call_args.args
    assert topic == "wmp/bridge/status"
    assert payload["mqtt_connected"] is True
    publisher.publish_gateway.assert_called_once_with(gateway)


def test_heartbeat_is_rate_limited(caplog):
    gateway, _timer, _clock = make_gateway()
    reporter = StatusReporter(_bridge([gateway]), interval_s=60)
    with caplog.at_level(logging.INFO, logger="status"):
        reporter.log_heartbeat()
        reporter.log_heartbeat()
    assert caplog.text.count("HB:") == 1
    assert "failed=-" in caplog.text

    caplog.clear()
    quiet = StatusReporter(_bridge([gateway]), interval_s=0)
    quiet.log_heartbeat()
    assert quiet.last_hb_ts == 0.0
