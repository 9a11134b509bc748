"""
Transaction Service — 手数料計算サービスのクライアント

外部サービスなので遅い・落ちている・おかしな値を返すことを前提にする。
  POST {FEE_SERVICE_URL}/calculate-fee  {"price": "100.00"}
  → {"fee": "5.00", "total": "105.00"}

手数料は台帳と同じ 2 桁に丸め、total は price + fee で組み立て直す
(レスポンスの total は信用しない)。
失敗はすべて FeeUnavailable にまとめる。フォールバックは呼び出し側が決める。
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import httpx
from pydantic import BaseModel, ConfigDict

CENT = Decimal("0.01")


class FeeUnavailable(Exception):
    """手数料計算サービスが使えない (タイムアウト・非 2xx・不正なボディ)"""


class FeeQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    fee: Decimal
    total: Decimal

    @classmethod
    def without_fee(cls, price: Decimal) -> "FeeQuote":
        return cls(fee=Decimal("0"), total=price)


class FeeCalculatorClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def compute_fee(self, price: Decimal) -> FeeQuote:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/calculate-fee", json={"price": str(price)}
                )
                resp.raise_for_status()
                body = resp.json()
            except httpx.HTTPError as e:
                raise FeeUnavailable(f"{type(e).__name__}: {e}") from e
            except ValueError as e:
                raise FeeUnavailable(f"Malformed response body: {e}") from e

        try:
            fee = Decimal(str(body["fee"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise FeeUnavailable(f"Malformed fee response: {body!r}") from e

        if not fee.is_finite() or fee < 0:
            raise FeeUnavailable(f"Invalid fee: {fee}")

        fee = fee.quantize(CENT, rounding=ROUND_HALF_UP)
        return FeeQuote(fee=fee, total=price + fee)
