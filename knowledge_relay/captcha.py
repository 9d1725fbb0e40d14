"""Verification dispatch for the knowledge relay.

Selects the configured captcha provider, normalises the caller's challenge
parameters (from headers or the JSON body) into the shape that provider
expects, and runs the check. With no provider configured, or with a provider
whose credentials are incomplete, every request passes.
"""

import json
import logging
from typing import Dict, Mapping, Optional, Sequence

import httpx

from knowledge_relay.captcha_providers import (
    PROVIDER_FACTORIES,
    CaptchaError,
    CaptchaProvider,
    build_provider,
)
from knowledge_relay.config import CaptchaConfig
from knowledge_relay.telemetry import LOGGER_NAME, log_event

_DISABLED_TYPES = ("", "none")

# Request headers a browser client may send; also used for CORS.
CAPTCHA_HEADERS = (
    "X-Captcha-Ticket",
    "X-Captcha-Randstr",
    "X-Captcha-Token",
    "X-Geetest-Lot-Number",
    "X-Geetest-Captcha-Output",
    "X-Geetest-Pass-Token",
    "X-Geetest-Gen-Time",
    "X-Recaptcha-Token",
    "X-Recaptcha-Action",
    "X-Cf-Turnstile-Token",
    "X-Aliyun-Captcha-Param",
    "X-Aliyun-Scene",
)


class CaptchaDispatcher:
    """Runs the configured provider, or passes everything when there is none."""

    def __init__(
        self,
        provider: Optional[CaptchaProvider],
        configured_type: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.provider = provider
        self.configured_type = configured_type.strip().lower()
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    @property
    def type(self) -> str:
        if self.provider is not None:
            return self.provider.type
        return self.configured_type

    def is_enabled(self) -> bool:
        """True when a challenge will actually be checked."""
        if self.configured_type in _DISABLED_TYPES:
            return False
        if self.provider is None:
            # Unknown type: not disabled, verify() reports the misconfiguration
            return True
        return self.provider.is_enabled()

    async def verify(self, params: Mapping[str, str]) -> bool:
        """Check a challenge.

        Args:
            params: Normalised parameters (see ``extract_captcha_params``).

        Returns:
            True when the challenge passed or verification is not active.

        Raises:
            CaptchaError: If the challenge failed, required parameters are
                missing, or the configured type is not supported.
        """
        if not self.is_enabled():
            log_event(self.logger, "captcha_skipped", level=logging.DEBUG,
                      provider=self.configured_type or None)
            return True

        if self.provider is None:
            log_event(self.logger, "captcha_failed", level=logging.ERROR,
                      provider=self.configured_type, reason="unsupported type")
            raise CaptchaError("Unsupported captcha type: {}".format(self.configured_type))

        try:
            passed = await self.provider.verify(params)
        except CaptchaError as exc:
            log_event(self.logger, "captcha_failed", level=logging.WARNING,
                      provider=self.provider.type, reason=exc.detail)
            raise

        log_event(self.logger, "captcha_passed", provider=self.provider.type)
        return passed


def create_dispatcher(
    config: CaptchaConfig,
    logger: Optional[logging.Logger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CaptchaDispatcher:
    """Build a dispatcher from configuration.

    Args:
        config: Captcha section of the relay configuration.
        logger: Logger handed to the dispatcher and provider.
        transport: Optional httpx transport for provider calls (tests).
    """
    log = logger or logging.getLogger(LOGGER_NAME)
    captcha_type = config.type.strip().lower()
    provider = build_provider(config, log, transport)

    if captcha_type not in _DISABLED_TYPES and captcha_type not in PROVIDER_FACTORIES:
        log_event(log, "captcha_unsupported_type", level=logging.WARNING, provider=captcha_type)
    elif provider is not None and not provider.is_enabled():
        log_event(log, "captcha_disabled", level=logging.WARNING, provider=captcha_type,
                  reason="incomplete credentials")

    return CaptchaDispatcher(provider, captcha_type, log)


def _first(
    headers: Mapping[str, str],
    header_names: Sequence[str],
    body: Mapping[str, str],
    body_names: Sequence[str] = (),
) -> str:
    """Return the first non-empty header value, else the first body value."""
    for name in header_names:
        value = headers.get(name.lower(), "")
        if value:
            return value
    for name in body_names:
        value = body.get(name) or ""
        if value:
            return value
    return ""


def extract_captcha_params(
    captcha_type: str,
    headers: Mapping[str, str],
    body: Mapping[str, str],
    client_ip: str = "",
) -> Dict[str, str]:
    """Collect the parameters the given provider type needs.

    Header values take precedence over body fields.

    Args:
        captcha_type: Provider tag (e.g. "tencent", "google_v3").
        headers: Request headers (any case).
        body: Captcha fields from the JSON body.
        client_ip: Caller address, forwarded to providers that accept it.

    Returns:
        A mapping in the provider's expected shape; unknown types yield an
        empty mapping.
    """
    headers = {k.lower(): v for k, v in headers.items()}
    captcha_type = captcha_type.strip().lower()

    if captcha_type == "tencent":
        return {
            "ticket": _first(headers, ["X-Captcha-Ticket"], body, ["captcha_ticket"]),
            "randstr": _first(headers, ["X-Captcha-Randstr"], body, ["captcha_randstr"]),
            "user_ip": client_ip,
        }

    if captcha_type == "geetest":
        return {
            "lot_number": _first(headers, ["X-Geetest-Lot-Number"], body, ["lot_number"]),
            "captcha_output": _first(
                headers, ["X-Geetest-Captcha-Output"], body, ["captcha_output"]
            ),
            "pass_token": _first(headers, ["X-Geetest-Pass-Token"], body, ["pass_token"]),
            "gen_time": _first(headers, ["X-Geetest-Gen-Time"], body, ["gen_time"]),
        }

    if captcha_type in ("google_v2", "google_v3"):
        return {
            "token": _first(
                headers, ["X-Recaptcha-Token", "X-Captcha-Token"], body, ["recaptcha_token"]
            ),
            "action": _first(headers, ["X-Recaptcha-Action"], body, ["recaptcha_action"]),
            "user_ip": client_ip,
        }

    if captcha_type == "cloudflare":
        return {
            "token": _first(
                headers, ["X-Cf-Turnstile-Token", "X-Captcha-Token"], body, ["cf_token"]
            ),
            "user_ip": client_ip,
        }

    if captcha_type == "aliyun":
        return _aliyun_params(headers, body)

    return {}


def _aliyun_params(headers: Mapping[str, str], body: Mapping[str, str]) -> Dict[str, str]:
    ticket = _first(headers, ["X-Captcha-Ticket"], body)
    randstr = _first(headers, ["X-Captcha-Randstr"], body)
    if not ticket:
        ticket = _first(headers, ["X-Aliyun-Captcha-Param"], body, ["captcha_ticket"])
        randstr = _first(headers, ["X-Aliyun-Scene"], body, ["captcha_randstr"])

    # The verify param must be forwarded exactly as the widget produced it.
    scene = ""
    if ticket.startswith("{"):
        try:
            ticket_data = json.loads(ticket)
        except ValueError:
            ticket_data = None
        if isinstance(ticket_data, dict) and isinstance(ticket_data.get("sceneId"), str):
            scene = ticket_data["sceneId"]

    if not scene:
        scene = randstr if randstr and randstr != "default" else "default"

    return {"captcha_param": ticket, "scene": scene}
