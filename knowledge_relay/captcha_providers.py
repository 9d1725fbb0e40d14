"""Verification challenge providers.

Each provider wraps one captcha backend behind the same small capability:
``verify(params)``, ``is_enabled()`` and ``type``. A passed challenge returns
True; a failed one raises CaptchaError with a human-readable reason.

Backend outages are handled per provider. Tencent and Aliyun are called
through their cloud SDKs and return structured result codes, so any SDK
failure is a hard failure. Geetest, reCAPTCHA and Turnstile are best-effort
services reached over httpx and fail open: an unreachable or misbehaving
backend lets the request through.
"""

import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import anyio.to_thread
import httpx
from alibabacloud_captcha20230305 import models as aliyun_models
from alibabacloud_captcha20230305.client import Client as AliyunCaptchaClient
from alibabacloud_tea_openapi import models as open_api_models
from alibabacloud_tea_util import models as util_models
from Tea.exceptions import TeaException, UnretryableException
from tencentcloud.captcha.v20190722 import captcha_client
from tencentcloud.captcha.v20190722 import models as tencent_models
from tencentcloud.common import credential
from tencentcloud.common.exception.tencent_cloud_sdk_exception import TencentCloudSDKException
from tencentcloud.common.profile.client_profile import ClientProfile
from tencentcloud.common.profile.http_profile import HttpProfile

from knowledge_relay.config import CaptchaConfig
from knowledge_relay.telemetry import LOGGER_NAME, log_event

TURNSTILE_FALLBACK_PREFIX = "cf_fallback_"

_TENCENT_CODE_MESSAGES = {
    6: "Captcha has expired",
    7: "Captcha has already been used",
    8: "Captcha verification failed",
    9: "Captcha parameters are invalid",
    10: "Captcha configuration error",
    100: "Captcha AppID does not exist",
}


class CaptchaError(Exception):
    """Raised when a challenge is not passed or cannot be checked."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class CaptchaProvider(Protocol):
    """Capability shared by every verification backend."""

    @property
    def type(self) -> str: ...

    def is_enabled(self) -> bool: ...

    async def verify(self, params: Mapping[str, str]) -> bool: ...


class _Provider:
    timeout = 10.0

    def __init__(self, config: CaptchaConfig, logger: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    @property
    def type(self) -> str:
        raise NotImplementedError


class _HTTPProvider(_Provider):
    """Shared plumbing for providers that talk to a backend over httpx."""

    def __init__(
        self,
        config: CaptchaConfig,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(config, logger)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _fail_open(self, reason: str) -> bool:
        log_event(
            self.logger,
            "captcha_backend_unavailable",
            level=logging.WARNING,
            provider=self.type,
            reason=reason,
            fail_open=True,
        )
        return True


class _SDKProvider(_Provider):
    """Shared plumbing for providers backed by a blocking vendor SDK client.

    The client is built on first use; SDK calls run on a worker thread.
    """

    def __init__(
        self,
        config: CaptchaConfig,
        logger: Optional[logging.Logger] = None,
        client: Any = None,
    ) -> None:
        super().__init__(config, logger)
        self._sdk_client = client

    def _build_client(self) -> Any:
        raise NotImplementedError

    def _sdk(self) -> Any:
        if self._sdk_client is None:
            self._sdk_client = self._build_client()
        return self._sdk_client

    def _request_failed(self, code: Any, message: str) -> CaptchaError:
        log_event(self.logger, "captcha_api_error", level=logging.ERROR,
                  provider=self.type, code=code, message=message)
        return CaptchaError("Captcha verification failed: {}".format(message))


class TencentCaptchaProvider(_SDKProvider):
    """Tencent Cloud slider captcha (DescribeCaptchaResult)."""

    @property
    def type(self) -> str:
        return "tencent"

    def is_enabled(self) -> bool:
        return bool(
            self.config.secret_id
            and self.config.secret_key
            and self.config.captcha_app_id
        )

    def _build_client(self) -> captcha_client.CaptchaClient:
        http_profile = HttpProfile()
        http_profile.endpoint = self.config.endpoint
        http_profile.reqTimeout = int(self.timeout)
        client_profile = ClientProfile()
        client_profile.httpProfile = http_profile
        cred = credential.Credential(self.config.secret_id, self.config.secret_key)
        return captcha_client.CaptchaClient(cred, "", client_profile)

    async def verify(self, params: Mapping[str, str]) -> bool:
        ticket = params.get("ticket", "")
        randstr = params.get("randstr", "")
        if not ticket or not randstr:
            raise CaptchaError("Captcha ticket and randstr are required")

        request = tencent_models.DescribeCaptchaResultRequest()
        request.CaptchaType = self.config.captcha_type
        request.Ticket = ticket
        request.UserIp = params.get("user_ip") or "127.0.0.1"
        request.Randstr = randstr
        request.CaptchaAppId = self.config.captcha_app_id
        request.AppSecretKey = self.config.app_secret_key

        client = self._sdk()
        try:
            response = await anyio.to_thread.run_sync(client.DescribeCaptchaResult, request)
        except TencentCloudSDKException as exc:
            raise self._request_failed(exc.get_code(), exc.get_message()) from exc

        code = getattr(response, "CaptchaCode", None)
        if not isinstance(code, int):
            raise CaptchaError("Captcha response format error")

        log_event(self.logger, "captcha_result", provider=self.type, code=code,
                  message=getattr(response, "CaptchaMsg", None))
        if code == 1:
            return True
        raise CaptchaError(
            _TENCENT_CODE_MESSAGES.get(
                code, "Captcha verification failed, code: {}".format(code)
            )
        )




class GeetestCaptchaProvider(_HTTPProvider):
    """Geetest v4 behavioural captcha. Fails open on backend outage."""

    timeout = 5.0

    @property
    def type(self) -> str:
        return "geetest"

    def is_enabled(self) -> bool:
        return bool(self.config.geetest_id and self.config.geetest_key)

    async def verify(self, params: Mapping[str, str]) -> bool:
        lot_number = params.get("lot_number", "")
        captcha_output = params.get("captcha_output", "")
        pass_token = params.get("pass_token", "")
        gen_time = params.get("gen_time", "")
        if not (lot_number and captcha_output and pass_token and gen_time):
            raise CaptchaError("Geetest parameters are required")

        form = {
            "lot_number": lot_number,
            "captcha_output": captcha_output,
            "pass_token": pass_token,
            "gen_time": gen_time,
            "sign_token": sign_lot_number(self.config.geetest_key, lot_number),
        }

        try:
            async with self._client() as client:
                resp = await client.post(
                    self.config.geetest_url,
                    params={"captcha_id": self.config.geetest_id},
                    data=form,
                )
        except httpx.HTTPError as exc:
            return self._fail_open("request failed: {}".format(exc))

        if resp.status_code != 200:
            return self._fail_open("HTTP {}".format(resp.status_code))

        try:
            result = resp.json()
            outcome = result.get("result")
        except (ValueError, AttributeError) as exc:
            return self._fail_open("unparsable response: {}".format(exc))

        if outcome == "success":
            return True
        raise CaptchaError("Verification failed: {}".format(result.get("reason", "")))


class RecaptchaProvider(_HTTPProvider):
    """Google reCAPTCHA v2 (checkbox) or v3 (score). Fails open on outage."""

    def __init__(
        self,
        config: CaptchaConfig,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        v3: bool = False,
    ) -> None:
        super().__init__(config, logger, transport)
        self.v3 = v3

    @property
    def type(self) -> str:
        return "google_v3" if self.v3 else "google_v2"

    def is_enabled(self) -> bool:
        return bool(self.config.recaptcha_secret_key)

    async def verify(self, params: Mapping[str, str]) -> bool:
        token = params.get("token", "")
        if not token:
            raise CaptchaError("reCAPTCHA token is required")

        form = {"secret": self.config.recaptcha_secret_key, "response": token}
        if params.get("user_ip"):
            form["remoteip"] = params["user_ip"]

        try:
            async with self._client() as client:
                resp = await client.post(self.config.recaptcha_url, data=form)
        except httpx.HTTPError as exc:
            return self._fail_open("request failed: {}".format(exc))

        if resp.status_code != 200:
            return self._fail_open("HTTP {}".format(resp.status_code))

        try:
            result: Dict[str, Any] = resp.json()
            success = bool(result.get("success"))
        except (ValueError, AttributeError) as exc:
            return self._fail_open("unparsable response: {}".format(exc))

        if not success:
            raise CaptchaError(
                "Verification failed, error codes: {}".format(result.get("error-codes", []))
            )

        if self.v3:
            action = params.get("action", "")
            if action and result.get("action") != action:
                log_event(self.logger, "captcha_action_mismatch", provider=self.type,
                          expected=action, actual=result.get("action"))
                raise CaptchaError("Verification action mismatch")

            try:
                score = float(result.get("score") or 0.0)
            except (TypeError, ValueError):
                return self._fail_open("unparsable score: {!r}".format(result.get("score")))
            if score < self.config.recaptcha_min_score:
                raise CaptchaError("Verification score too low: {:.2f}".format(score))

        return True


class TurnstileProvider(_HTTPProvider):
    """Cloudflare Turnstile managed challenge. Fails open on outage.

    Tokens starting with ``cf_fallback_`` are issued by the client when the
    widget itself cannot load and are accepted without a backend call.
    """

    @property
    def type(self) -> str:
        return "cloudflare"

    def is_enabled(self) -> bool:
        return bool(self.config.turnstile_secret_key)

    async def verify(self, params: Mapping[str, str]) -> bool:
        if not self.is_enabled():
            return True

        token = params.get("token", "")
        if not token:
            raise CaptchaError("Turnstile token is required")

        if len(token) > len(TURNSTILE_FALLBACK_PREFIX) and token.startswith(
            TURNSTILE_FALLBACK_PREFIX
        ):
            log_event(self.logger, "captcha_fallback_token", provider=self.type)
            return True

        form = {"secret": self.config.turnstile_secret_key, "response": token}
        if params.get("user_ip"):
            form["remoteip"] = params["user_ip"]

        try:
            async with self._client() as client:
                resp = await client.post(self.config.turnstile_url, data=form)
        except httpx.HTTPError as exc:
            return self._fail_open("request failed: {}".format(exc))

        if resp.status_code != 200:
            return self._fail_open("HTTP {}".format(resp.status_code))

        try:
            result: Dict[str, Any] = resp.json()
            success = bool(result.get("success"))
        except (ValueError, AttributeError) as exc:
            return self._fail_open("unparsable response: {}".format(exc))

        if not success:
            message = "Turnstile verification failed"
            if result.get("error-codes"):
                message += ": {}".format(result["error-codes"])
            raise CaptchaError(message)
        return True



class AliyunCaptchaProvider(_SDKProvider):
    """Aliyun captcha 2.0 (VerifyIntelligentCaptcha)."""

    @property
    def type(self) -> str:
        return "aliyun"

    def is_enabled(self) -> bool:
        return bool(
            self.config.aliyun_access_key_id
            and self.config.aliyun_access_key_secret
            and self.config.aliyun_captcha_app_id
        )

    def _build_client(self) -> AliyunCaptchaClient:
        config = open_api_models.Config(
            access_key_id=self.config.aliyun_access_key_id,
            access_key_secret=self.config.aliyun_access_key_secret,
        )
        config.endpoint = self.config.aliyun_endpoint or "captcha.cn-shanghai.aliyuncs.com"
        return AliyunCaptchaClient(config)

    async def verify(self, params: Mapping[str, str]) -> bool:
        captcha_param = params.get("captcha_param", "")
        if not captcha_param:
            raise CaptchaError("Captcha parameters are required")

        request = aliyun_models.VerifyIntelligentCaptchaRequest(
            captcha_verify_param=captcha_param,
            scene_id=params.get("scene") or "default",
        )
        runtime = util_models.RuntimeOptions(
            connect_timeout=int(self.timeout * 1000),
            read_timeout=int(self.timeout * 1000),
        )

        client = self._sdk()
        try:
            response = await anyio.to_thread.run_sync(
                client.verify_intelligent_captcha_with_options, request, runtime
            )
        except TeaException as exc:
            raise self._request_failed(exc.code, exc.message) from exc
        except UnretryableException as exc:
            log_event(self.logger, "captcha_request_failed", level=logging.ERROR,
                      provider=self.type, error=str(exc))
            raise CaptchaError("Captcha verification request failed: {}".format(exc)) from exc

        body = getattr(response, "body", None)
        if body is None:
            raise CaptchaError("Captcha response format error")

        if not body.success:
            raise self._request_failed(body.code, body.message or "Captcha verification failed")

        result = body.result
        if result is None:
            raise CaptchaError("Captcha response is missing the result field")

        log_event(self.logger, "captcha_result", provider=self.type,
                  verify_result=result.verify_result, code=result.verify_code)
        if result.verify_result is True:
            return True

        reason = "Captcha verification failed"
        if result.verify_code:
            reason = "Captcha verification failed, code: {}".format(result.verify_code)
        raise CaptchaError(reason)


def sign_lot_number(key: str, lot_number: str) -> str:
    """HMAC-SHA256 signature Geetest expects as ``sign_token``."""
    return hmac.new(
        key.encode("utf-8"), lot_number.encode("utf-8"), hashlib.sha256
    ).hexdigest()


ProviderFactory = Callable[
    [CaptchaConfig, Optional[logging.Logger], Optional[httpx.AsyncBaseTransport]],
    CaptchaProvider,
]

PROVIDER_FACTORIES: Dict[str, ProviderFactory] = {
    "tencent": lambda c, l, t: TencentCaptchaProvider(c, l),
    "geetest": GeetestCaptchaProvider,
    "google_v2": lambda c, l, t: RecaptchaProvider(c, l, t, v3=False),
    "google_v3": lambda c, l, t: RecaptchaProvider(c, l, t, v3=True),
    "cloudflare": TurnstileProvider,
    "aliyun": lambda c, l, t: AliyunCaptchaProvider(c, l),
}


def build_provider(
    config: CaptchaConfig,
    logger: Optional[logging.Logger] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[CaptchaProvider]:
    """Instantiate the provider named by ``config.type``.

    ``transport`` reaches the httpx-based providers only. Returns None when
    the type is empty, ``none`` or not recognised; callers distinguish the
    last case by inspecting the configured type.
    """
    factory = PROVIDER_FACTORIES.get(config.type.strip().lower())
    if factory is None:
        return None
    return factory(config, logger, transport)
