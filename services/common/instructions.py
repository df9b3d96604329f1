from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from .errors import MalformedInstruction, UnknownInstruction
from .fixed_point import MAX_UINT256

MAX_WRAP_DEPTH = 1


class InstructionKind(IntEnum):
    COMPLETE_MIGRATION = 0
    COMPLETE_MIGRATION_WITH_WRAP = 1


@dataclass(frozen=True)
class CompleteMigration:
    shares: int
    assets: int

    kind = InstructionKind.COMPLETE_MIGRATION


@dataclass(frozen=True)
class CompleteMigrationWithWrap:
    inner: CompleteMigration

    kind = InstructionKind.COMPLETE_MIGRATION_WITH_WRAP

    @property
    def shares(self) -> int:
        return self.inner.shares

    @property
    def assets(self) -> int:
        return self.inner.assets


Instruction = CompleteMigration | CompleteMigrationWithWrap


def _check_uint256(name: str, value: int) -> None:
    if not isinstance(value, int) or value < 0 or value > MAX_UINT256:
        raise MalformedInstruction(f'{name} out of uint256 range: {value}')


def _payload(instruction: Instruction) -> bytes:
    if isinstance(instruction, CompleteMigration):
        _check_uint256('shares', instruction.shares)
        _check_uint256('assets', instruction.assets)
        return encode(['uint256', 'uint256'], [instruction.shares, instruction.assets])
    if isinstance(instruction, CompleteMigrationWithWrap):
        inner = instruction.inner
        return encode(['uint8', 'bytes'], [int(inner.kind), _payload(inner)])
    raise MalformedInstruction(f'unsupported instruction type: {type(instruction).__name__}')


def encode_instruction(instruction: Instruction) -> bytes:
    return encode(['uint8', 'bytes'], [int(instruction.kind), _payload(instruction)])


def _kind(raw_kind: int) -> InstructionKind:
    try:
        return InstructionKind(raw_kind)
    except ValueError as exc:
        raise UnknownInstruction(raw_kind) from exc


def _decode_envelope(data: bytes) -> tuple[int, bytes]:
    try:
        raw_kind, payload = decode(['uint8', 'bytes'], bytes(data))
    except (DecodingError, TypeError, ValueError) as exc:
        raise MalformedInstruction(str(exc)) from exc
    return raw_kind, payload


def _decode(kind: InstructionKind, payload: bytes, depth: int) -> Instruction:
    if kind is InstructionKind.COMPLETE_MIGRATION:
        try:
            shares, assets = decode(['uint256', 'uint256'], payload)
        except (DecodingError, TypeError, ValueError) as exc:
            raise MalformedInstruction(str(exc)) from exc
        return CompleteMigration(shares=shares, assets=assets)

    if depth >= MAX_WRAP_DEPTH:
        raise MalformedInstruction('nested wrap instructions are not supported')
    inner_kind, inner_payload = _decode_envelope(payload)
    inner = _decode(_kind(inner_kind), inner_payload, depth + 1)
    if not isinstance(inner, CompleteMigration):
        raise MalformedInstruction('wrap instruction must carry a complete-migration payload')
    return CompleteMigrationWithWrap(inner=inner)


def decode_instruction(data: bytes) -> Instruction:
    raw_kind, payload = _decode_envelope(data)
    return _decode(_kind(raw_kind), payload, depth=0)
