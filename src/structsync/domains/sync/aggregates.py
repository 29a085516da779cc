"""Aggregates for the Sync Context.

SyncChannel is one end of a channel: the registry it owns, the
protocol driving it, which structure each route last carried, and
(optionally) the access patterns seen per structure.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Union,
)

from structsync.domains.registry.aggregates import MAX_PENDING_EVENTS, StructureRegistry
from structsync.domains.shared.kernel import UnknownStructureError
from structsync.domains.tracking.services import tracker_of
from structsync.domains.tracking.value_objects import AccessPattern
from structsync.models.config_models import SyncConfig

from .events import FullTransferFallback
from .services import SyncProtocol
from .value_objects import (
    PRIMITIVE_STRUCTURE_ID,
    EncodeContext,
    NegotiationMode,
    Packet,
)

if TYPE_CHECKING:
    from structsync.domains.registry.repository import StructureRegistryRepository
    from structsync.domains.tracking.aggregates import RequestContext

logger = logging.getLogger(__name__)


@dataclass
class SyncChannel:
    """Aggregate root for one end of a sender/receiver pairing.

    The route index remembers which structure id each route last
    carried. A sender uses it to decide what the receiver holds; a
    receiver uses it to advertise what it holds on the next request.

    Invariants:
    - The route index never exceeds config.max_route_entries
    - Pattern history per structure never exceeds
      config.max_patterns_per_structure
    - A route is only advertised while its structure is still cached
    """
    channel_id: str = field(default_factory=lambda: f"chan_{uuid.uuid4().hex[:12]}")
    config: SyncConfig = field(default_factory=SyncConfig)
    registry: Optional[StructureRegistry] = None
    event_publisher: Optional[Callable[[object], None]] = None
    created_at: datetime = field(default_factory=datetime.now)

    protocol: SyncProtocol = field(init=False, repr=False)
    _routes: "OrderedDict[str, str]" = field(
        default_factory=OrderedDict, init=False, repr=False
    )
    _patterns: "OrderedDict[str, Deque[AccessPattern]]" = field(
        default_factory=OrderedDict, init=False, repr=False
    )
    _events: Deque[object] = field(
        default_factory=lambda: deque(maxlen=MAX_PENDING_EVENTS), init=False, repr=False
    )
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False)
    _sent: int = field(default=0, init=False, repr=False)
    _received: int = field(default=0, init=False, repr=False)
    _fallbacks: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.registry is None:
            self.registry = StructureRegistry.create_for_channel(
                self.channel_id, max_entries=self.config.max_registry_entries
            )
        self.protocol = SyncProtocol(
            registry=self.registry,
            config=self.config,
            event_publisher=self.event_publisher,
        )

    @classmethod
    def from_repository(
        cls,
        repository: "StructureRegistryRepository",
        channel_id: str,
        config: Optional[SyncConfig] = None,
        event_publisher: Optional[Callable[[object], None]] = None,
    ) -> SyncChannel:
        """Open a channel backed by the repository's registry for channel_id."""
        return cls(
            channel_id=channel_id,
            config=config or SyncConfig(),
            registry=repository.get_or_create(channel_id),
            event_publisher=event_publisher,
        )

    # -- sending -----------------------------------------------------------

    def send(
        self,
        value: Any,
        route: Optional[str] = None,
        known: Union[None, str, Iterable[str]] = None,
        request: Optional["RequestContext"] = None,
    ) -> Packet:
        """Encode a value for the peer.

        Args:
            value: Plain value or tracked proxy
            route: Logical route (request key) the value answers
            known: Transport hint naming what the receiver holds;
                defaults to what this route carried last
            request: Request scope the value was tracked in
        """
        request_id = request.request_id if request is not None else None
        if known is None:
            context = EncodeContext.from_known(self.known_for(route), request_id=request_id)
        else:
            context = self.negotiate(known, request_id=request_id)

        packet = self.protocol.encode(value, context)

        with self._lock:
            self._sent += 1
            if route is not None and packet.structure_id != PRIMITIVE_STRUCTURE_ID:
                self._remember_route(route, packet.structure_id)
        if self.config.enable_pattern_learning:
            tracker = tracker_of(value)
            if tracker is not None and tracker.active:
                self.record_pattern(packet.structure_id, tracker.get_access_pattern())
        return packet

    def negotiate(
        self, hint: Union[None, str, Iterable[str]], **kwargs: Any
    ) -> EncodeContext:
        """Build an EncodeContext from a transport hint.

        Raises:
            ValueError: In single mode, if the hint names several ids
        """
        mode = NegotiationMode.from_string(self.config.negotiation_mode)
        return EncodeContext.from_hint(hint, mode, **kwargs)

    # -- receiving ---------------------------------------------------------

    def receive(
        self,
        packet: Union[Packet, Mapping[str, Any]],
        route: Optional[str] = None,
    ) -> Any:
        """Decode a packet from the peer.

        With config.fallback_on_error, an unknown structure drops the
        route's entry so the next request negotiates a full transfer,
        and None is returned instead of raising.

        Raises:
            UnknownStructureError: Structure not held and no fallback
        """
        packet = Packet.coerce(packet)
        try:
            value = self.protocol.decode(packet)
        except UnknownStructureError as e:
            if not self.config.fallback_on_error:
                raise
            logger.warning(
                "Channel %s cannot decode %s (%s); falling back to full transfer",
                self.channel_id, e.structure_id, route or "<no route>",
            )
            with self._lock:
                self._fallbacks += 1
                self._events.append(
                    FullTransferFallback(
                        channel_id=self.channel_id,
                        structure_id=e.structure_id,
                        route=route,
                    )
                )
            if route is not None:
                self.forget_route(route)
            return None

        with self._lock:
            self._received += 1
            if route is not None and packet.structure_id != PRIMITIVE_STRUCTURE_ID:
                self._remember_route(route, packet.structure_id)
        return value

    # -- route index -------------------------------------------------------

    def known_for(self, route: Optional[str] = None) -> FrozenSet[str]:
        """Structure ids to advertise for a route.

        Without a route, list mode advertises every cached structure
        and single mode advertises nothing.
        """
        if route is None:
            if self.config.negotiation_mode == NegotiationMode.LIST.value:
                return frozenset(self.registry.ids())
            return frozenset()
        with self._lock:
            structure_id = self._routes.get(route)
        if structure_id is None or structure_id not in self.registry:
            return frozenset()
        return frozenset([structure_id])

    def structure_for(self, route: str) -> Optional[str]:
        with self._lock:
            return self._routes.get(route)

    def forget_route(self, route: str) -> None:
        with self._lock:
            self._routes.pop(route, None)

    def _remember_route(self, route: str, structure_id: str) -> None:
        self._routes[route] = structure_id
        self._routes.move_to_end(route)
        while len(self._routes) > self.config.max_route_entries:
            self._routes.popitem(last=False)

    # -- pattern learning --------------------------------------------------

    def record_pattern(self, structure_id: str, pattern: AccessPattern) -> bool:
        """Append a pattern to the structure's history.

        Returns:
            False if pattern learning is disabled
        """
        if not self.config.enable_pattern_learning:
            return False
        with self._lock:
            history = self._patterns.get(structure_id)
            if history is None:
                history = deque(maxlen=self.config.max_patterns_per_structure)
                self._patterns[structure_id] = history
            history.append(pattern)
            self._patterns.move_to_end(structure_id)
            while len(self._patterns) > self.config.max_registry_entries:
                self._patterns.popitem(last=False)
        return True

    def patterns_for(self, structure_id: str) -> List[AccessPattern]:
        """Recorded patterns for a structure, oldest first."""
        with self._lock:
            return list(self._patterns.get(structure_id, ()))

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        """Drop all channel state, including the registry's contents."""
        with self._lock:
            self._routes.clear()
            self._patterns.clear()
        self.protocol.forget_materialized()
        self.registry.clear()
        logger.debug("Channel %s closed", self.channel_id)

    def get_events(self) -> List[object]:
        """Get and clear collected domain events (channel and registry)."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events + self.registry.get_events()

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "channel_id": self.channel_id,
                "routes": len(self._routes),
                "sent": self._sent,
                "received": self._received,
                "fallbacks": self._fallbacks,
                "pattern_structures": len(self._patterns),
                "registry": self.registry.stats(),
                "created_at": self.created_at.isoformat(),
            }
