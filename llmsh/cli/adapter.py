"""
Outward-facing request adapter.

Converts raw stdin text into a request, runs it and converts the outcome
into the JSON-ready response the zsh plugin expects. All error-to-response
decisions live here, including whether provider failures are silent.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

import yaml

from llmsh.config.loader import Settings
from llmsh.core.errors import ProviderError, ValidationError
from llmsh.core.orchestrator import CommandOrchestrator, CommandRequest

logger = logging.getLogger(__name__)

CONFIG_ERRORS = (FileNotFoundError, ValueError, yaml.YAMLError, OSError)


def error_response(message: str) -> Dict[str, Any]:
    """Response carrying only an error message."""
    return {"error": message}


def parse_request(raw_input: str, method: str) -> CommandRequest:
    """Decode a JSON request; the subcommand decides the method.

    Raises:
        ValidationError: If the input is not a JSON object or has bad fields
    """
    try:
        data = json.loads(raw_input)
    except ValueError as e:
        raise ValidationError(f"invalid JSON input: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("invalid JSON input: expected an object")
    return CommandRequest.from_dict({**data, "method": method})


class RequestAdapter:
    """Runs one request end to end and decides what the shell sees.

    With silent_provider_errors on, a failed provider call produces no
    output at all, so an LLM hiccup never disturbs the prompt.
    """

    def __init__(
        self,
        load_settings: Callable[[], Settings],
        build_orchestrator: Callable[[Settings], CommandOrchestrator],
        silent_provider_errors: bool = True,
    ):
        self.load_settings = load_settings
        self.build_orchestrator = build_orchestrator
        self.silent_provider_errors = silent_provider_errors

    def handle(self, method: str, raw_input: str) -> Optional[Dict[str, Any]]:
        """Handle raw request text for the given method.

        Returns:
            The response dict to print, or None when nothing must be printed
        """
        try:
            request = parse_request(raw_input, method)
        except ValidationError as e:
            return error_response(str(e))

        try:
            settings = self.load_settings()
        except CONFIG_ERRORS as e:
            return error_response(f"load config: {e}")

        orchestrator = self.build_orchestrator(settings)
        try:
            return orchestrator.dispatch(request).to_dict()
        except ValidationError as e:
            return error_response(str(e))
        except ProviderError as e:
            logger.info("Provider failure for %s: %s", method, e)
            if self.silent_provider_errors:
                return None
            return error_response(str(e))
        except Exception as e:
            logger.exception("Unexpected failure handling %s", method)
            return error_response(str(e))
        finally:
            orchestrator.close()
