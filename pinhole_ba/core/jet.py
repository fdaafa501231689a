"""
Jet (dual number) scalar for forward-mode automatic differentiation

A Jet carries a scalar value ``a`` and a fixed-size derivative vector ``v``.
Every arithmetic operation propagates ``v`` with the usual calculus rules, so
evaluating a function on Jets seeded with unit vectors yields the function
value together with its exact Jacobian row.

The module level helpers (``sin``, ``cos``, ``sqrt``, ``scalar_part``) accept
either Jets or plain numpy floats, which lets cost functors be written once
and evaluated with both scalar types.
"""

import numpy as np
from typing import Union

Number = Union[float, np.floating]


class Jet:
    """Scalar value plus derivative vector"""

    __slots__ = ("a", "v")

    # Make numpy scalars defer to the Jet operators (e.g. np.float64 * Jet)
    __array_ufunc__ = None

    def __init__(self, a: Number, v: np.ndarray):
        self.a = np.float64(a)
        self.v = v

    @classmethod
    def variable(cls, value: Number, index: int, size: int) -> "Jet":
        """Jet for an independent variable: unit derivative at ``index``"""
        v = np.zeros(size, dtype=np.float64)
        v[index] = 1.0
        return cls(value, v)

    @classmethod
    def constant(cls, value: Number, size: int) -> "Jet":
        return cls(value, np.zeros(size, dtype=np.float64))

    @property
    def size(self) -> int:
        return self.v.shape[0]

    # Arithmetic

    def __add__(self, other):
        if isinstance(other, Jet):
            return Jet(self.a + other.a, self.v + other.v)
        return Jet(self.a + other, self.v.copy())

    __radd__ = __add__

    def __sub__(self, other):
        if isinstance(other, Jet):
            return Jet(self.a - other.a, self.v - other.v)
        return Jet(self.a - other, self.v.copy())

    def __rsub__(self, other):
        return Jet(other - self.a, -self.v)

    def __mul__(self, other):
        if isinstance(other, Jet):
            return Jet(self.a * other.a, self.a * other.v + other.a * self.v)
        return Jet(self.a * other, self.v * other)

    __rmul__ = __mul__

    def __truediv__(self, other):
        if isinstance(other, Jet):
            # Quotient rule: (f/g)' = (f' - (f/g) g') / g
            quotient = self.a / other.a
            return Jet(quotient, (self.v - quotient * other.v) / other.a)
        return Jet(self.a / other, self.v / other)

    def __rtruediv__(self, other):
        quotient = other / self.a
        return Jet(quotient, -quotient / self.a * self.v)

    def __neg__(self):
        return Jet(-self.a, -self.v)

    def __pos__(self):
        return self

    def __abs__(self):
        return -self if self.a < 0 else self

    def __pow__(self, exponent):
        if isinstance(exponent, Jet):
            raise TypeError("Jet exponents are not supported")
        value = self.a ** exponent
        return Jet(value, exponent * self.a ** (exponent - 1) * self.v)

    # Comparisons only look at the scalar part

    def __lt__(self, other):
        return self.a < scalar_part(other)

    def __le__(self, other):
        return self.a <= scalar_part(other)

    def __gt__(self, other):
        return self.a > scalar_part(other)

    def __ge__(self, other):
        return self.a >= scalar_part(other)

    def __eq__(self, other):
        if not isinstance(other, (Jet, int, float, np.number)):
            return NotImplemented
        return self.a == scalar_part(other)

    def __ne__(self, other):
        if not isinstance(other, (Jet, int, float, np.number)):
            return NotImplemented
        return self.a != scalar_part(other)

    # Equality ignores the derivative, so Jets are not hashable
    __hash__ = None

    # Elementary functions

    def sin(self) -> "Jet":
        return Jet(np.sin(self.a), np.cos(self.a) * self.v)

    def cos(self) -> "Jet":
        return Jet(np.cos(self.a), -np.sin(self.a) * self.v)

    def sqrt(self) -> "Jet":
        root = np.sqrt(self.a)
        return Jet(root, self.v / (2.0 * root))

    def isfinite(self) -> bool:
        return bool(np.isfinite(self.a) and np.all(np.isfinite(self.v)))

    def __repr__(self) -> str:
        return f"Jet(a={self.a!r}, v={self.v!r})"


def sin(x):
    return x.sin() if isinstance(x, Jet) else np.sin(x)


def cos(x):
    return x.cos() if isinstance(x, Jet) else np.cos(x)


def sqrt(x):
    return x.sqrt() if isinstance(x, Jet) else np.sqrt(x)


def scalar_part(x) -> np.float64:
    """Value of ``x`` without derivative information"""
    return x.a if isinstance(x, Jet) else np.float64(x)


def derivative_part(x, size: int) -> np.ndarray:
    """Derivative vector of ``x``; zeros for plain numbers"""
    if isinstance(x, Jet):
        return x.v
    return np.zeros(size, dtype=np.float64)


def as_scalars(values):
    """Sequences holding Jets pass through, anything else becomes a float64 array"""
    if any(isinstance(x, Jet) for x in values):
        return values
    return np.asarray(values, dtype=np.float64)
