"""Tests for the connection state machine."""

from __future__ import annotations

import pytest

from src.connection.state import (
    ConnectionEvent,
    InvalidTransitionError,
    from_status,
    to_status,
    transition,
)
from src.models import ConnectionState, GatewayStatus


class TestTransitions:
    @pytest.mark.parametrize("start", [
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
        ConnectionState.CONNECTED,
    ])
    def test_connect_enters_connecting(self, start: ConnectionState) -> None:
        assert transition(start, ConnectionEvent.CONNECT) is ConnectionState.CONNECTING

    def test_probe_outcomes(self) -> None:
        assert transition(
            ConnectionState.CONNECTING, ConnectionEvent.PROBE_OK,
        ) is ConnectionState.CONNECTED
        assert transition(
            ConnectionState.CONNECTING, ConnectionEvent.PROBE_FAIL,
        ) is ConnectionState.ERROR

    @pytest.mark.parametrize("start", [
        ConnectionState.CONNECTED,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    ])
    def test_disconnect_from_settled_states(self, start: ConnectionState) -> None:
        assert transition(start, ConnectionEvent.DISCONNECT) is ConnectionState.DISCONNECTED

    def test_connect_while_connecting_rejected(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(ConnectionState.CONNECTING, ConnectionEvent.CONNECT)
        assert exc_info.value.state is ConnectionState.CONNECTING
        assert "connecting" in str(exc_info.value)

    def test_disconnect_while_connecting_rejected(self) -> None:
        with pytest.raises(InvalidTransitionError):
            transition(ConnectionState.CONNECTING, ConnectionEvent.DISCONNECT)

    def test_probe_result_outside_connecting_rejected(self) -> None:
        with pytest.raises(InvalidTransitionError):
            transition(ConnectionState.DISCONNECTED, ConnectionEvent.PROBE_OK)


class TestStatusMapping:
    def test_round_trip_for_settled_states(self) -> None:
        for status in GatewayStatus:
            assert to_status(from_status(status)) is status

    def test_connecting_is_never_persisted(self) -> None:
        with pytest.raises(ValueError):
            to_status(ConnectionState.CONNECTING)
