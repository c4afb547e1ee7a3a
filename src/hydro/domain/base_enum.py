from enum import Enum


class BaseEnum(str, Enum):
    """String-valued enum that serializes to its value."""

    @classmethod
    def from_value(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(value)
        raise ValueError(f"Cannot create {cls.__name__} from {value!r}")

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"{self.__class__.__name__}.{self.name}"
