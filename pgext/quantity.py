"""Kubernetes resource quantities, eg `10Gi`, `500m` or `1e3`.

A quantity is a decimal number with an optional suffix. The suffix determines
the format that `str()` uses when it renders the canonical form of the value:

  * binary SI: Ki, Mi, Gi, Ti, Pi, Ei
  * decimal SI: n, u, m, "", k, M, G, T, P, E
  * decimal exponent: e3, E-2 etc

The canonical form mirrors the one the Kubernetes API server produces, ie
`1024Mi` becomes `1Gi`, `1000M` becomes `1G` and `0.5` becomes `500m`.

"""

import re
from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal, DecimalException, localcontext
from enum import Enum
from typing import Any, Dict, Tuple

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema


class Format(str, Enum):
    BINARY_SI = "BinarySI"
    DECIMAL_SI = "DecimalSI"
    DECIMAL_EXPONENT = "DecimalExponent"


BINARY_SUFFIXES: Dict[str, int] = {
    "": 0,
    "Ki": 10,
    "Mi": 20,
    "Gi": 30,
    "Ti": 40,
    "Pi": 50,
    "Ei": 60,
}

DECIMAL_SUFFIXES: Dict[str, int] = {
    "n": -9,
    "u": -6,
    "m": -3,
    "": 0,
    "k": 3,
    "M": 6,
    "G": 9,
    "T": 12,
    "P": 15,
    "E": 18,
}

# Quantities are rounded up to the nearest nano unit.
NANO = Decimal("1e-9")

_RE_NUMBER = re.compile(r"^([+-]?)(\d+(?:\.\d*)?|\.\d+)(.*)$")
_RE_EXPONENT = re.compile(r"^[eE]([+-]?\d+)$")


def _parse_suffix(suffix: str) -> Tuple[int, int, Format]:
    """Return the base, exponent and format implied by `suffix`."""
    # NOTE: the empty suffix is decimal SI, not binary SI.
    if suffix != "" and suffix in BINARY_SUFFIXES:
        return 2, BINARY_SUFFIXES[suffix], Format.BINARY_SI

    if suffix in DECIMAL_SUFFIXES:
        return 10, DECIMAL_SUFFIXES[suffix], Format.DECIMAL_SI

    match = _RE_EXPONENT.match(suffix)
    if match is None:
        raise ValueError(f"invalid quantity suffix <{suffix}>")
    return 10, int(match.group(1)), Format.DECIMAL_EXPONENT


def _decimal_parts(value: Decimal) -> Tuple[int, int]:
    """Return `(mantissa, exponent)` with an exponent that is a multiple of 3."""
    with localcontext() as ctx:
        ctx.prec = 60
        sign, digits, exponent = value.normalize().as_tuple()
    assert isinstance(exponent, int)

    mantissa = int(str.join("", [str(_) for _ in digits]))
    mantissa = -mantissa if sign else mantissa

    # Lower the exponent to the nearest multiple of 3.
    shift = exponent % 3
    return mantissa * 10**shift, exponent - shift


@dataclass(frozen=True)
class Quantity:
    """Immutable quantity with an exact decimal `value`.

    Two quantities are equal if their values are equal, irrespective of the
    format they were written in, ie `Quantity.parse("1Gi") ==
    Quantity.parse("1024Mi")`.

    """

    value: Decimal = Decimal(0)
    format: Format = field(default=Format.DECIMAL_SI, compare=False)

    @classmethod
    def parse(cls, text: str) -> "Quantity":
        text = text.strip()
        match = _RE_NUMBER.match(text)
        if match is None:
            raise ValueError(f"invalid quantity <{text}>")
        sign, number, suffix = match.groups()

        base, exponent, fmt = _parse_suffix(suffix)

        with localcontext() as ctx:
            ctx.prec = 60
            try:
                value = Decimal(number) * Decimal(base) ** exponent
                rounded = value.quantize(NANO, rounding=ROUND_UP)
            except DecimalException:
                raise ValueError(f"quantity out of range <{text}>")

            # Fractional binary quantities below one cannot be rendered in
            # binary SI without rounding.
            if fmt == Format.BINARY_SI and 0 < value < 1:
                fmt = Format.DECIMAL_SI
            value = rounded
            if sign == "-":
                value = -value
        return cls(value=value, format=fmt)

    @classmethod
    def from_value(cls, value: "Quantity | str | int | float") -> "Quantity":
        """Convert the scalar `value` into a `Quantity`."""
        if isinstance(value, Quantity):
            return value
        if isinstance(value, bool):
            raise ValueError("quantity must not be a boolean")
        if isinstance(value, (int, float)):
            return cls.parse(str(value))
        if isinstance(value, str):
            return cls.parse(value)
        raise ValueError(f"unsupported quantity type <{type(value).__name__}>")

    def is_zero(self) -> bool:
        return self.value == 0

    def canonical(self) -> Tuple[str, str]:
        """Return the canonical `(number, suffix)` tuple."""
        if self.is_zero():
            return "0", ""

        fmt = self.format
        if fmt == Format.BINARY_SI:
            # Small or fractional values would lose precision in binary SI.
            if -1024 < self.value < 1024 or self.value != self.value.to_integral():
                fmt = Format.DECIMAL_SI

        if fmt == Format.BINARY_SI:
            number, exponent = int(self.value), 0
            while number % 1024 == 0 and exponent < 60:
                number //= 1024
                exponent += 10
            suffix = {v: k for k, v in BINARY_SUFFIXES.items()}[exponent]
            return str(number), suffix

        mantissa, exponent = _decimal_parts(self.value)
        if exponent == 0:
            return str(mantissa), ""
        if fmt == Format.DECIMAL_SI:
            suffixes = {v: k for k, v in DECIMAL_SUFFIXES.items()}
            if exponent in suffixes:
                return str(mantissa), suffixes[exponent]
        return str(mantissa), f"e{exponent}"

    def __str__(self) -> str:
        number, suffix = self.canonical()
        return number + suffix

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Accept strings and numbers in models and serialise to `str(self)`."""
        return core_schema.no_info_plain_validator_function(
            cls.from_value,
            serialization=core_schema.to_string_ser_schema(when_used="always"),
        )
