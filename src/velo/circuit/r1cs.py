"""Rank-1 constraint systems and the iden3 binary formats.

Wire 0 is the constant ONE. Public inputs are allocated next, then private
inputs, then intermediate wires, which is the ordering the .r1cs and .wtns
formats expect (no public outputs are used).
"""

import struct
from typing import Dict, Iterable, List, Optional, Tuple, Union

from velo.exceptions import ConstraintViolation
from velo.utils.hash import FIELD_MODULUS, sha256

ONE_WIRE = 0

Term = Union["LinearCombination", int]


class LinearCombination:
    """Sparse sum of coefficient * wire, with the constant term on wire 0."""

    __slots__ = ("terms",)

    def __init__(self, terms: Optional[Dict[int, int]] = None):
        self.terms: Dict[int, int] = {}
        for wire, coeff in (terms or {}).items():
            coeff %= FIELD_MODULUS
            if coeff:
                self.terms[wire] = coeff

    @classmethod
    def wire(cls, index: int) -> "LinearCombination":
        return cls({index: 1})

    @classmethod
    def constant(cls, value: int) -> "LinearCombination":
        return cls({ONE_WIRE: value})

    @staticmethod
    def lift(value: Term) -> "LinearCombination":
        if isinstance(value, LinearCombination):
            return value
        return LinearCombination.constant(value)

    def __add__(self, other: Term) -> "LinearCombination":
        other = LinearCombination.lift(other)
        terms = dict(self.terms)
        for wire, coeff in other.terms.items():
            terms[wire] = terms.get(wire, 0) + coeff
        return LinearCombination(terms)

    __radd__ = __add__

    def __neg__(self) -> "LinearCombination":
        return LinearCombination({wire: -coeff for wire, coeff in self.terms.items()})

    def __sub__(self, other: Term) -> "LinearCombination":
        return self + (-LinearCombination.lift(other))

    def __rsub__(self, other: Term) -> "LinearCombination":
        return LinearCombination.lift(other) - self

    def scale(self, factor: int) -> "LinearCombination":
        return LinearCombination({wire: coeff * factor for wire, coeff in self.terms.items()})

    def evaluate(self, witness: List[int]) -> int:
        return sum(coeff * witness[wire] for wire, coeff in self.terms.items()) % FIELD_MODULUS

    def __repr__(self) -> str:
        return f"LinearCombination({self.terms})"


class Constraint:
    """A * B = C over linear combinations."""

    __slots__ = ("a", "b", "c", "annotation")

    def __init__(self, a: LinearCombination, b: LinearCombination, c: LinearCombination, annotation: str):
        self.a = a
        self.b = b
        self.c = c
        self.annotation = annotation

    def is_satisfied(self, witness: List[int]) -> bool:
        left = self.a.evaluate(witness) * self.b.evaluate(witness) % FIELD_MODULUS
        return left == self.c.evaluate(witness)


class ConstraintSystem:
    """
    Constraint system plus the witness computed while it is being built.

    Circuits allocate every wire together with its value, so the same code
    path produces the constraint structure (setup) and the witness (proving).
    """

    def __init__(self):
        self.witness: List[int] = [1]
        self.labels: List[str] = ["one"]
        self.constraints: List[Constraint] = []
        self.n_public = 0
        self.n_private = 0
        self._inputs_closed = False

    def _allocate(self, value: int, label: str) -> LinearCombination:
        self.witness.append(value % FIELD_MODULUS)
        self.labels.append(label)
        return LinearCombination.wire(len(self.witness) - 1)

    def public_input(self, label: str, value: int) -> LinearCombination:
        if self.n_private or self._inputs_closed:
            raise RuntimeError("Public inputs must be allocated before any other wire")
        self.n_public += 1
        return self._allocate(value, label)

    def private_input(self, label: str, value: int) -> LinearCombination:
        if self._inputs_closed:
            raise RuntimeError("Private inputs must be allocated before intermediate wires")
        self.n_private += 1
        return self._allocate(value, label)

    def intermediate(self, label: str, value: int) -> LinearCombination:
        self._inputs_closed = True
        return self._allocate(value, label)

    def value(self, lc: Term) -> int:
        return LinearCombination.lift(lc).evaluate(self.witness)

    def enforce(self, a: Term, b: Term, c: Term, annotation: str) -> None:
        """Add the constraint a * b = c."""
        self.constraints.append(
            Constraint(LinearCombination.lift(a), LinearCombination.lift(b), LinearCombination.lift(c), annotation)
        )

    def enforce_equal(self, left: Term, right: Term, annotation: str) -> None:
        self.enforce(left, LinearCombination.constant(1), right, annotation)

    def multiply(self, a: Term, b: Term, label: str) -> LinearCombination:
        """Allocate a wire holding a * b and constrain it."""
        out = self.intermediate(label, self.value(a) * self.value(b))
        self.enforce(a, b, out, label)
        return out

    @property
    def n_wires(self) -> int:
        return len(self.witness)

    @property
    def public_values(self) -> List[int]:
        return self.witness[1:1 + self.n_public]

    def unsatisfied(self) -> Optional[Constraint]:
        for constraint in self.constraints:
            if not constraint.is_satisfied(self.witness):
                return constraint
        return None

    def check(self) -> None:
        """
        Raise if the witness does not satisfy every constraint.

        Raises:
            ConstraintViolation: Naming the first failing constraint
        """
        failing = self.unsatisfied()
        if failing is not None:
            raise ConstraintViolation(
                f"Witness does not satisfy constraint '{failing.annotation}'",
                constraint=failing.annotation,
            )

    def to_r1cs_bytes(self) -> bytes:
        """Serialize the constraint structure in the iden3 .r1cs format."""
        header = struct.pack(
            "<I32sIIIIQI",
            32,
            FIELD_MODULUS.to_bytes(32, "little"),
            self.n_wires,
            0,
            self.n_public,
            self.n_private,
            self.n_wires,
            len(self.constraints),
        )

        body = bytearray()
        for constraint in self.constraints:
            for lc in (constraint.a, constraint.b, constraint.c):
                items = sorted(lc.terms.items())
                body += struct.pack("<I", len(items))
                for wire, coeff in items:
                    body += struct.pack("<I", wire) + coeff.to_bytes(32, "little")

        labels = b"".join(struct.pack("<Q", i) for i in range(self.n_wires))

        return _container(b"r1cs", 1, [(1, header), (2, bytes(body)), (3, labels)])

    def to_wtns_bytes(self) -> bytes:
        """Serialize the witness in the iden3 .wtns format."""
        header = struct.pack("<I32sI", 32, FIELD_MODULUS.to_bytes(32, "little"), self.n_wires)
        values = b"".join(v.to_bytes(32, "little") for v in self.witness)
        return _container(b"wtns", 2, [(1, header), (2, values)])

    def digest(self) -> str:
        """Hex digest of the constraint structure; independent of the witness."""
        return sha256(self.to_r1cs_bytes()).hex()

    def stats(self) -> dict:
        return {
            "wires": self.n_wires,
            "constraints": len(self.constraints),
            "public_inputs": self.n_public,
            "private_inputs": self.n_private,
        }


def _container(magic: bytes, version: int, sections: Iterable[Tuple[int, bytes]]) -> bytes:
    sections = list(sections)
    out = bytearray(magic + struct.pack("<II", version, len(sections)))
    for section_type, payload in sections:
        out += struct.pack("<IQ", section_type, len(payload)) + payload
    return bytes(out)


def read_r1cs_header(data: bytes) -> dict:
    """
    Read the header section of an .r1cs file.

    Raises:
        ValueError: If the data is not an r1cs container
    """
    if data[:4] != b"r1cs":
        raise ValueError("Not an r1cs file")
    _, n_sections = struct.unpack_from("<II", data, 4)
    offset = 12
    for _ in range(n_sections):
        section_type, size = struct.unpack_from("<IQ", data, offset)
        offset += 12
        if section_type == 1:
            (field_size, prime, n_wires, n_pub_out, n_pub_in, n_prv_in,
             n_labels, n_constraints) = struct.unpack_from("<I32sIIIIQI", data, offset)
            return {
                "field_size": field_size,
                "prime": int.from_bytes(prime, "little"),
                "wires": n_wires,
                "public_outputs": n_pub_out,
                "public_inputs": n_pub_in,
                "private_inputs": n_prv_in,
                "labels": n_labels,
                "constraints": n_constraints,
            }
        offset += size
    raise ValueError("r1cs file has no header section")
