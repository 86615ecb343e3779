"""
Alipay adapter using the official alipay-sdk-python-all.

Implements page pay (desktop) and WAP pay (mobile) intents, trade query,
close, refund, and asynchronous notification signature verification.
Raw gateway payloads are parsed into fixed records here; nothing past this
module looks at Alipay's strings.
"""
from __future__ import annotations

import asyncio
import json
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import parse_qsl

from alipay.aop.api.AlipayClientConfig import AlipayClientConfig
from alipay.aop.api.DefaultAlipayClient import DefaultAlipayClient
from alipay.aop.api.domain.AlipayTradeCloseModel import AlipayTradeCloseModel
from alipay.aop.api.domain.AlipayTradePagePayModel import AlipayTradePagePayModel
from alipay.aop.api.domain.AlipayTradeQueryModel import AlipayTradeQueryModel
from alipay.aop.api.domain.AlipayTradeRefundModel import AlipayTradeRefundModel
from alipay.aop.api.domain.AlipayTradeWapPayModel import AlipayTradeWapPayModel
from alipay.aop.api.exception.Exception import RequestException
from alipay.aop.api.request.AlipayTradeCloseRequest import AlipayTradeCloseRequest
from alipay.aop.api.request.AlipayTradePagePayRequest import AlipayTradePagePayRequest
from alipay.aop.api.request.AlipayTradeQueryRequest import AlipayTradeQueryRequest
from alipay.aop.api.request.AlipayTradeRefundRequest import AlipayTradeRefundRequest
from alipay.aop.api.request.AlipayTradeWapPayRequest import AlipayTradeWapPayRequest
from alipay.aop.api.util.SignatureUtils import verify_with_rsa

from application.dtos.payments import (
    CreatePaymentIntent,
    RefundTradeRequest,
    RefundTradeResult,
    TradeQueryResult,
    VerifiedNotification,
)
from core.settings import AlipaySettings, payment_settings
from domain.common.exceptions import (
    GatewayRequestError,
    GatewaySignatureInvalid,
    InvalidRequestException,
)
from domain.payment.entity import ChannelHint, TradeStatus
from infrastructure.external.payments.base import BasePaymentClient
from shared.codes.payment_codes import ALIPAY_TRADE_NOT_EXIST


# Gateway-level success code for synchronous API responses
_SUCCESS_CODE = "10000"


class AlipayClient(BasePaymentClient):
    provider = "alipay"

    transient_errors = (TimeoutError, asyncio.TimeoutError, ConnectionError, RequestException)

    def __init__(self, config: Optional[AlipaySettings] = None):
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
        )
        cfg = config or payment_settings.alipay
        if not (cfg.app_id and cfg.private_key_path and cfg.alipay_public_key_path):
            raise RuntimeError("ALIPAY configuration incomplete")
        self._cfg = cfg
        self._public_key = self._read_key(cfg.alipay_public_key_path)
        self._client = self._build_client(
            server_url=cfg.gateway,
            app_id=cfg.app_id,
            app_private_key=self._read_key(cfg.private_key_path),
            alipay_public_key=self._public_key,
            sign_type=cfg.sign_type,
        )

    @staticmethod
    def _read_key(path: str) -> str:
        if os.path.isfile(path):
            with open(path, encoding="utf-8") as f:
                return f.read()
        return path

    def _build_client(self, *, server_url: str, app_id: str, app_private_key: str, alipay_public_key: str, sign_type: str):
        alipay_client_config = AlipayClientConfig()
        alipay_client_config.server_url = server_url
        alipay_client_config.app_id = app_id
        alipay_client_config.app_private_key = app_private_key
        alipay_client_config.alipay_public_key = alipay_public_key
        alipay_client_config.sign_type = sign_type
        alipay_client_config.timeout = int(self.timeout_seconds)
        return DefaultAlipayClient(alipay_client_config=alipay_client_config)

    def _is_transient(self, exc: BaseException) -> bool:
        # The SDK raises RequestException for local signing failures too; those never heal on retry
        if isinstance(exc, RequestException) and "sign failed" in str(exc):
            return False
        return super()._is_transient(exc)

    @staticmethod
    def _to_yuan(amount: Decimal) -> str:
        # Alipay uses yuan units as string, with 2 decimals
        return f"{Decimal(amount):.2f}"

    @staticmethod
    def _parse_amount(value: Any) -> Optional[Decimal]:
        if value in (None, ""):
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    async def _execute(self, request: Any) -> dict[str, Any]:
        """Send a synchronous API request and decode its response node."""
        content = await self._call(self._client.execute, request)
        if isinstance(content, (bytes, bytearray)):
            content = content.decode("utf-8")
        try:
            data = json.loads(content) if content else {}
        except ValueError as exc:
            raise GatewayRequestError("Malformed gateway response", provider=self.provider) from exc
        return data if isinstance(data, dict) else {}

    async def create_payment_intent(self, req: CreatePaymentIntent) -> str:  # type: ignore[override]
        if req.channel_hint == ChannelHint.MOBILE:
            model = AlipayTradeWapPayModel()
            model.product_code = "QUICK_WAP_WAY"
            request = AlipayTradeWapPayRequest(biz_model=model)
        else:
            model = AlipayTradePagePayModel()
            model.product_code = "FAST_INSTANT_TRADE_PAY"
            request = AlipayTradePagePayRequest(biz_model=model)
        model.out_trade_no = req.order_ref
        model.total_amount = self._to_yuan(req.amount)
        model.subject = req.subject
        model.timeout_express = f"{req.timeout_minutes}m"
        if self._cfg.notify_url:
            request.notify_url = self._cfg.notify_url
        return_url = req.return_url or self._cfg.return_url
        if return_url:
            request.return_url = return_url

        try:
            # page_execute signs locally and returns the redirect URL for GET
            pay_url = await self._call(self._client.page_execute, request, "GET")
        except Exception as exc:
            raise GatewayRequestError(str(exc) or "Failed to build payment URL", provider=self.provider) from exc
        if not pay_url:
            raise GatewayRequestError("Empty payment URL", provider=self.provider)
        self._log("payment_intent_created", order_ref=req.order_ref, channel=req.channel_hint.value)
        return str(pay_url)

    async def query_trade(self, order_ref: str) -> TradeQueryResult:  # type: ignore[override]
        model = AlipayTradeQueryModel()
        model.out_trade_no = order_ref
        request = AlipayTradeQueryRequest(biz_model=model)

        async def _once() -> dict[str, Any]:
            return await self._execute(request)

        try:
            data = await self._retry(_once)
        except GatewayRequestError:
            raise
        except Exception as exc:
            raise GatewayRequestError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc

        code = str(data.get("code") or "")
        sub_code = data.get("sub_code")
        if code != _SUCCESS_CODE:
            if sub_code == ALIPAY_TRADE_NOT_EXIST:
                self._log("trade_not_found", order_ref=order_ref)
                return TradeQueryResult(found=False, trade_status=TradeStatus.NOT_FOUND, raw=data)
            raise GatewayRequestError(
                f"{code}:{sub_code}",
                provider=self.provider,
                provider_code=sub_code,
                details={"sub_msg": data.get("sub_msg")},
            )

        provider_status = str(data.get("trade_status") or "")
        status = self._map_status(provider_status)
        if status is None:
            raise GatewayRequestError(
                f"Unexpected trade_status: {provider_status}",
                provider=self.provider,
            )
        self._log("trade_queried", order_ref=order_ref, trade_status=status.value)
        return TradeQueryResult(
            found=True,
            trade_status=status,
            gateway_transaction_id=data.get("trade_no") or None,
            total_amount=self._parse_amount(data.get("total_amount")),
            raw=data,
        )

    async def close_trade(self, order_ref: str) -> None:  # type: ignore[override]
        model = AlipayTradeCloseModel()
        model.out_trade_no = order_ref
        request = AlipayTradeCloseRequest(biz_model=model)
        try:
            data = await self._execute(request)
        except GatewayRequestError:
            raise
        except Exception as exc:
            raise GatewayRequestError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc
        code = str(data.get("code") or "")
        if code != _SUCCESS_CODE:
            raise GatewayRequestError(
                f"{code}:{data.get('sub_code')}",
                provider=self.provider,
                provider_code=data.get("sub_code"),
            )
        self._log("trade_closed", order_ref=order_ref)

    async def refund_trade(self, req: RefundTradeRequest) -> RefundTradeResult:  # type: ignore[override]
        model = AlipayTradeRefundModel()
        model.out_trade_no = req.order_ref
        model.refund_amount = self._to_yuan(req.amount)
        # out_request_no makes a retried refund idempotent on the gateway side
        model.out_request_no = req.refund_ref
        if req.reason:
            model.refund_reason = req.reason
        request = AlipayTradeRefundRequest(biz_model=model)
        try:
            data = await self._execute(request)
        except GatewayRequestError:
            raise
        except Exception as exc:
            raise GatewayRequestError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc

        code = str(data.get("code") or "")
        if code != _SUCCESS_CODE:
            message = data.get("sub_msg") or data.get("msg") or "Refund failed"
            self._log("refund_rejected", order_ref=req.order_ref, sub_code=data.get("sub_code"), message=message)
            return RefundTradeResult(success=False, message=str(message), provider_code=data.get("sub_code"))
        self._log("refund_accepted", order_ref=req.order_ref, refund_ref=req.refund_ref, fund_change=data.get("fund_change"))
        return RefundTradeResult(success=True, message=str(data.get("msg") or "Success"))

    def verify_callback(self, headers: dict[str, Any], body: bytes) -> VerifiedNotification:  # type: ignore[override]
        # Alipay sends form-encoded payloads
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise GatewaySignatureInvalid("Undecodable notification body", provider=self.provider) from exc
        sign = params.pop("sign", None)
        params.pop("sign_type", None)
        if not sign:
            raise GatewaySignatureInvalid("Missing sign", provider=self.provider)
        # Build unsigned content: sort by key and join as k=v with &
        unsigned_content = "&".join(f"{k}={v}" for k, v in sorted(params.items()) if v != "")
        try:
            ok = verify_with_rsa(self._public_key, unsigned_content.encode("utf-8"), sign)
        except Exception as exc:
            raise GatewaySignatureInvalid("Signature verification failed", provider=self.provider) from exc
        if not ok:
            raise GatewaySignatureInvalid("Invalid signature", provider=self.provider)
        app_id = params.get("app_id")
        if app_id and self._cfg.app_id and app_id != self._cfg.app_id:
            raise GatewaySignatureInvalid("app_id mismatch", provider=self.provider, details={"app_id": app_id})

        order_ref = params.get("out_trade_no")
        if not order_ref:
            raise InvalidRequestException("Notification without out_trade_no", field="out_trade_no")
        return VerifiedNotification(
            order_ref=order_ref,
            trade_status=self._map_status(params.get("trade_status", "")),
            gateway_transaction_id=params.get("trade_no") or None,
            total_amount=self._parse_amount(params.get("total_amount")),
            provider=self.provider,
            data=params,
            raw_body=body,
        )
