#!/usr/bin/env python3
"""
eerosync - Error Taxonomy
Exceptions raised by the eero cloud client and helpers for classifying them.
"""
import requests

# Server codes that are worth retrying later instead of failing outright
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class EeroAPIError(Exception):
    """Base class for every error surfaced by the eero cloud client."""

    message = "Eero API error."

    def __init__(self, message=None):
        super().__init__(message or self.message)


class Unauthenticated(EeroAPIError):
    message = "Not authenticated with eero."


class InvalidResponse(EeroAPIError):
    message = "Invalid response from eero API."


class InvalidPayload(EeroAPIError):
    message = "Unexpected eero API payload."


class ServerError(EeroAPIError):
    """Upstream error carrying the HTTP status code and the server's message."""

    def __init__(self, code, message):
        self.code = code
        self.server_message = message
        super().__init__(f"Eero API error ({code}): {message}")


def is_transient(error):
    """True for failures likely to clear up on their own: 5xx, rate limits and network drops."""
    if isinstance(error, ServerError):
        return error.code in TRANSIENT_STATUS_CODES
    network_errors = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)
    if isinstance(error, network_errors):
        return True
    return isinstance(error, InvalidResponse) and isinstance(error.__cause__, network_errors)


def describe(error):
    """Human readable text for an error, used in action results and logs."""
    text = str(error).strip()
    return text or error.__class__.__name__
