"""Write-once variable store shared by the steps of one execution."""

from typing import Iterator, Mapping

from .errors import UnboundVariableError, VariableAlreadyBoundError
from .payloads import Payload


class VariableStore:
    """
    Append-only mapping from variable name to payload.

    Payloads are immutable, so concurrent readers need no locking. Each
    write targets a name no other step declares, so writers never race.
    """

    def __init__(self, initial: Mapping[str, Payload] | None = None):
        self._values: dict[str, Payload] = {}
        self._order: list[str] = []
        for name, payload in (initial or {}).items():
            self.write(name, payload)

    def write(self, name: str, payload: Payload) -> None:
        if name in self._values:
            raise VariableAlreadyBoundError(f"Variable '{name}' is already bound")
        self._values[name] = payload
        self._order.append(name)

    def read(self, name: str) -> Payload:
        try:
            return self._values[name]
        except KeyError:
            raise UnboundVariableError(f"Variable '{name}' was read before it was bound") from None

    def get(self, name: str, default: Payload | None = None) -> Payload | None:
        return self._values.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def names(self) -> list[str]:
        """Bound names in binding order."""
        return list(self._order)

    def snapshot(self) -> dict[str, Payload]:
        return {name: self._values[name] for name in self._order}
