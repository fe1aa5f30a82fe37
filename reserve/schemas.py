# reserve/schemas.py
from typing import Union
from pydantic import BaseModel, Field, field_validator

from reserve.config import parse_hex
from reserve.errors import InvalidRequest


def _to_int(v):
    # amounts may arrive as decimal strings: wei-sized values do not survive JSON doubles
    if isinstance(v, str):
        v = v.strip()
        if not v.isdigit():
            raise ValueError("must be a non-negative decimal integer")
        return int(v)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise ValueError("must be a non-negative integer")
    return v


class SubmitRequest(BaseModel):
    amount: Union[int, str] = 0
    prompt: str
    payment: Union[int, str]

    @field_validator("amount", "payment")
    @classmethod
    def non_negative_int(cls, v):
        return _to_int(v)


class CallbackRequest(BaseModel):
    """Oracle callback. Bytes travel as 0x-prefixed hex."""

    request_id: Union[int, str]
    output: str = ""
    callback_data: str = ""

    @field_validator("request_id")
    @classmethod
    def request_id_int(cls, v):
        return _to_int(v)

    @field_validator("output", "callback_data")
    @classmethod
    def hex_bytes(cls, v):
        try:
            parse_hex(v)
        except InvalidRequest as e:
            raise ValueError(e.message) from e
        return v

    def output_bytes(self) -> bytes:
        return parse_hex(self.output)

    def callback_data_bytes(self) -> bytes:
        return parse_hex(self.callback_data)


class GasBudgetUpdate(BaseModel):
    gas_limit: int = Field(..., ge=0)
