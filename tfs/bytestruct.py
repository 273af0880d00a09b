"""Packing and validation of on-disk records."""

from __future__ import annotations

import struct
from dataclasses import InitVar
from typing import Any, ClassVar, Literal, NamedTuple, TypeVar

from typing_extensions import Annotated, get_args, get_origin, get_type_hints

from .base import ValidationError

__all__ = ["ByteStruct"]


INT_CONVERSION = {1: "B", 2: "H", 4: "I", 8: "Q"}
SIGNED_SPECIFIERS = ("signed", "unsigned")
INTERNAL_NAMES = (
    "__bytestruct_fields__",
    "__bytestruct_format__",
    "__bytestruct_size__",
    "__bytestruct_cached__",
)

_Bs = TypeVar("_Bs", bound="ByteStruct")


class _FieldDescriptor(NamedTuple):
    """Metadata about a field of a `ByteStruct`.

    - `type_origin`: Origin of the `Annotated` type (e.g. `bytes` for
        `Annotated[bytes, 16]`).
    - `type_args`: Tuple of the metadata added to `Annotated` (e.g. `(16,)` for
        `Annotated[bytes, 16]`).
    """

    type_origin: Any
    type_args: tuple[Any, ...] = ()


class _ByteStructMeta(type):
    """Metaclass of `ByteStruct`.

    Analyzes the type annotations found in a `ByteStruct` subclass and sets
    `__bytestruct_fields__`, `__bytestruct_format__` and `__bytestruct_size__`
    accordingly.
    """

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> _ByteStructMeta:
        """Provide a signature of `__new__()` which allows specifying `kwargs`
        like `byteorder` when subclassing `ByteStruct`.
        """
        return super().__new__(mcs, name, bases, namespace)

    def __init__(
        cls,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        byteorder: Literal["<", ">", "!", "="] = ">",
    ):
        super().__init__(name, bases, namespace)
        if not bases:
            return  # cls is ByteStruct

        type_hints = get_type_hints(cls, include_extras=True)
        format_ = f"{byteorder}"
        fields = {}

        for name, type_ in type_hints.items():
            if name in INTERNAL_NAMES or type(type_) is InitVar:
                continue

            origin = get_origin(type_)
            if origin is ClassVar:
                continue

            if origin is not Annotated:
                raise TypeError(
                    f"Unannotated type {type_} of field {name!r} is not allowed for "
                    f"ByteStruct"
                )

            args = get_args(type_)
            annotated_type = args[0]
            size = args[1]
            if not isinstance(size, int):
                raise TypeError("Field size must be specified as int")
            if size < 1:
                raise ValueError("Field size must be greater than or equal to 1")

            if annotated_type is int:
                signed = False
                if len(args) > 2:
                    if args[2] not in SIGNED_SPECIFIERS:
                        raise ValueError(
                            f"Invalid specifier {args[2]} on field {name!r}, must be "
                            f"one of {SIGNED_SPECIFIERS}"
                        )
                    signed = args[2] == "signed"
                if size not in INT_CONVERSION.keys():
                    raise ValueError(
                        f"Invalid int field size {size}, must be one of "
                        f"{tuple(INT_CONVERSION.keys())}"
                    )
                format_specifier = INT_CONVERSION[size]
                if signed:
                    format_specifier = format_specifier.lower()
                format_ += format_specifier

            elif annotated_type is bytes:
                format_ += f"{size}s"
            else:
                raise TypeError(
                    f"Annotated type {args[0]} of field {name!r} is not allowed for "
                    f"ByteStruct"
                )

            fields[name] = _FieldDescriptor(annotated_type, args[1:])

        cls.__bytestruct_fields__ = fields
        cls.__bytestruct_format__ = format_
        cls.__bytestruct_size__ = struct.calcsize(format_)

    def __len__(cls) -> int:
        """Size of the `bytes` form of the `ByteStruct` in bytes."""
        return cls.__bytestruct_size__


class ByteStruct(metaclass=_ByteStructMeta):
    """Fixed-size record as stored in a block.

    A thin wrapper of a struct according to the `struct` module. Field values are
    accessible by name through the `dataclass` decorator and are validated
    against their declared sizes when an instance is created.

    Every `ByteStruct` subclass must be a frozen `dataclass`. All records of the
    file system are big-endian, which is the default byte order.

    Example::

        @dataclasses.dataclass(frozen=True)
        class MyRecord(ByteStruct):

            field_1: Annotated[int, 4]            # unsigned int of size 4 bytes
            field_2: Annotated[int, 4, 'signed']  # signed int of size 4 bytes
            field_3: Annotated[bytes, 16]         # bytes of size 16

    Custom validation logic can be added by overriding the `validate()` method.
    """

    # Populated per class
    __bytestruct_fields__: "dict[str, _FieldDescriptor]"
    __bytestruct_format__: str
    __bytestruct_size__: int

    # Populated per instance
    __bytestruct_cached__: bytes

    @classmethod
    def _check_direct_instantiation(cls) -> None:
        """Raise `TypeError` if it is tried to directly instantiate `ByteStruct`."""
        if cls.__bases__ == (object,):
            raise TypeError(f"Cannot directly instantiate {cls.__name__}")

    @classmethod
    def _check_frozen_dataclass(cls) -> None:
        """Raise `TypeError` if the subclass is not a frozen `dataclass`."""
        params: Any = getattr(cls, "__dataclass_params__", None)
        if params is None or not params.frozen:
            raise TypeError("ByteStruct subclass must be a frozen dataclass")

    # noinspection PyUnusedLocal
    def __init__(self, *args: Any, **kwargs: Any):
        self._check_direct_instantiation()
        self._check_frozen_dataclass()

    def __post_init__(self) -> None:
        """Trigger the internal and the user-defined validation logic."""
        self._check_frozen_dataclass()
        if not hasattr(self, "__bytestruct_cached__"):
            self._validate_and_cache()
        self.validate()

    def _validate_and_cache(self) -> None:
        """Validate field values against the defined formats.

        Because this involves creating a `bytes` version of the instance anyway,
        we cache the resulting `bytes` object.
        """
        values = []

        for name, descriptor in self.__bytestruct_fields__.items():
            value = getattr(self, name)

            if descriptor.type_origin is bytes:
                size = descriptor.type_args[0]
                if len(value) != size:
                    raise ValidationError(
                        f"Value of field {name!r} must be of length {size} bytes, "
                        f"got {len(value)} bytes"
                    )

            values.append(value)

        # int values are validated via struct.pack().
        try:
            bytes_ = struct.pack(self.__bytestruct_format__, *values)
        except (struct.error, OverflowError) as e:
            raise ValidationError(
                f"Value out of range (format is {self.__bytestruct_format__!r})"
            ) from e

        # Avoid __setattr__() here because this is a frozen dataclass.
        self.__dict__["__bytestruct_cached__"] = bytes_

    def validate(self) -> None:
        """Custom validation logic.

        Automatically executed after object creation and after validation of the
        field values against their corresponding formats.
        """

    @classmethod
    def from_bytes(cls: type[_Bs], b: bytes) -> _Bs:
        """Parse record from `bytes` of exactly the record's size."""
        cls._check_direct_instantiation()

        size = cls.__bytestruct_size__

        if len(b) != size:
            raise ValueError(f"Structure is {size} bytes long, got {len(b)} bytes")

        self = cls(*struct.unpack(cls.__bytestruct_format__, b))

        # Avoid __setattr__() here because this is a frozen dataclass.
        self.__dict__["__bytestruct_cached__"] = bytes(b)
        return self

    @classmethod
    def from_block(cls: type[_Bs], block: bytes, offset: int = 0) -> _Bs:
        """Parse record found at byte `offset` of `block`."""
        size = cls.__bytestruct_size__
        if not 0 <= offset <= len(block) - size:
            raise ValueError(
                f"Record of {size} bytes at offset {offset} exceeds block of "
                f"{len(block)} bytes"
            )
        return cls.from_bytes(block[offset : offset + size])

    def to_block(self, block_size: int) -> bytes:
        """`bytes` form of the record, zero-padded to `block_size` bytes."""
        b = self.__bytestruct_cached__
        if len(b) > block_size:
            raise ValueError(
                f"Record of {len(b)} bytes does not fit into {block_size} bytes"
            )
        return b + b"\x00" * (block_size - len(b))

    def __bytes__(self) -> bytes:
        """`bytes` form of the `ByteStruct` instance."""
        return self.__bytestruct_cached__

    def __len__(self) -> int:
        """Size of the `bytes` form of the `ByteStruct` in bytes."""
        return self.__bytestruct_size__
