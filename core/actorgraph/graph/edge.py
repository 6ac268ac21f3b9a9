"""
Edge Protocol - How nodes connect in a graph.

Edge types:
- unconditional: always taken after the source finishes
- conditional: a router decides at run time, from the merged
  post-superstep state, which of its declared targets to activate. It may
  return zero, one or many targets (fan-out).

Routers are tagged with their possible targets so the compiler can check
them without running them. Targets come from an explicit list, from the
values of a ``path_map``, or from a ``Literal[...]`` return annotation.
"""

import inspect
import types
import typing
from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, get_args, get_origin

from actorgraph.errors import InvalidGraphDefinition, InvalidRoute

if TYPE_CHECKING:
    from actorgraph.graph.state import StateSnapshot

START = "__start__"
END = "__end__"

RESERVED_NAMES = frozenset({START, END})

RouterFunc = Callable[["StateSnapshot"], Any]


@dataclass(frozen=True)
class EdgeSpec:
    """Unconditional edge."""

    source: str
    target: str

    @property
    def id(self) -> str:
        return f"{self.source}->{self.target}"


def _literal_values(annotation: Any) -> list[Any] | None:
    """Values of ``Literal[...]`` or a sequence/set of Literal, else None."""
    if get_origin(annotation) is Literal:
        return list(get_args(annotation))
    origin = get_origin(annotation)
    if origin in (list, tuple, set, frozenset, Sequence, typing.Union, types.UnionType):
        values: list[Any] = []
        for arg in get_args(annotation):
            if arg is Ellipsis or arg is type(None):
                continue
            inner = _literal_values(arg)
            if inner is None:
                return None
            values.extend(inner)
        return values or None
    return None


def infer_targets(func: Callable) -> list[str] | None:
    """Read possible targets from a router's ``Literal`` return annotation."""
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        return None
    annotation = hints.get("return")
    if annotation is None:
        return None
    values = _literal_values(annotation)
    if values is None:
        return None
    return [str(v) for v in values]


@dataclass(frozen=True)
class Router:
    """
    A routing function tagged with its declared targets.

    Attributes:
        func: ``state -> key | [keys] | None``
        targets: Every node name (or END) the router may produce
        path_map: Optional mapping from router return keys to node names
    """

    func: RouterFunc
    targets: tuple[str, ...]
    path_map: Mapping[Hashable, str] | None = None

    @classmethod
    def create(
        cls,
        func: RouterFunc,
        targets: Sequence[str] | Mapping[Hashable, str] | None = None,
    ) -> "Router":
        name = getattr(func, "__name__", repr(func))
        path_map: Mapping[Hashable, str] | None = None
        if isinstance(targets, Mapping):
            path_map = dict(targets)
            declared = list(dict.fromkeys(path_map.values()))
        elif targets is not None:
            declared = list(dict.fromkeys(targets))
        else:
            inferred = infer_targets(func)
            if inferred is None:
                raise InvalidGraphDefinition(
                    f"Router '{name}' declares no targets. Pass targets=[...] "
                    "or annotate its return type with Literal[...]",
                    component="router",
                )
            declared = list(dict.fromkeys(inferred))
        if not declared:
            raise InvalidGraphDefinition(
                f"Router '{name}' declares an empty target set", component="router"
            )
        return cls(func=func, targets=tuple(declared), path_map=path_map)

    @property
    def name(self) -> str:
        return getattr(self.func, "__name__", repr(self.func))

    async def resolve(self, source: str, state: "StateSnapshot") -> list[str]:
        """
        Evaluate the router and map its result to declared targets.

        Raises:
            InvalidRoute: result names something outside the declared set
        """
        result = self.func(state)
        if inspect.isawaitable(result):
            result = await result

        if result is None:
            keys: list[Any] = []
        elif isinstance(result, (str, bytes)) or not isinstance(result, (Sequence, set, frozenset)):
            keys = [result]
        else:
            keys = list(result)

        if self.path_map is not None:
            missing = [k for k in keys if k not in self.path_map]
            if missing:
                raise InvalidRoute(source, [str(k) for k in missing], list(self.targets))
            names = [self.path_map[k] for k in keys]
        else:
            names = [str(k) for k in keys]

        undeclared = [n for n in names if n not in self.targets]
        if undeclared:
            raise InvalidRoute(source, undeclared, list(self.targets))
        return list(dict.fromkeys(names))


@dataclass(frozen=True)
class ConditionalEdgeSpec:
    """Conditional edge: ``router`` picks targets from ``source``."""

    source: str
    router: Router
    description: str = field(default="", compare=False)

    @property
    def id(self) -> str:
        return f"{self.source}->?{self.router.name}"

    @property
    def targets(self) -> tuple[str, ...]:
        return self.router.targets
