"""Shared route dependencies"""

from fastapi import Request

from issue_relay.relay import Relay


def get_relay(request: Request) -> Relay:
    """The Relay built by the application lifespan"""
    return request.app.state.relay
