"""
Observer Bus for ChatPipes

Fans conversation events out to registered observers. Observers are plain
callables (sync or async) taking a single event. Delivery happens in
subscription order; a failing observer is logged and skipped so it cannot
stall the turn loop or starve other observers.
"""

import asyncio
import inspect
import logging
from typing import Callable, Dict, List, Optional
from uuid import UUID, uuid4

from chatpipes.protocol.events import Event

Observer = Callable[[Event], object]


class ObserverBus:
    """
    Delivers events to zero or more observers.

    The ObserverBus is responsible for:
    - Registering and removing observers
    - Optionally filtering observers to selected event types
    - Isolating observer failures from the publisher
    """

    def __init__(self):
        """Initialize the observer bus."""
        self._observers: Dict[UUID, Observer] = {}
        self._filters: Dict[UUID, Optional[frozenset]] = {}
        self.delivery_failures = 0
        self.logger = logging.getLogger("chatpipes.protocol.observer_bus")

    def subscribe(self, observer: Observer, event_types: Optional[List[str]] = None) -> UUID:
        """
        Register an observer.

        Args:
            observer: Callable (or coroutine function) receiving each event
            event_types: Restrict delivery to these event ``type`` values

        Returns:
            Token to pass to ``unsubscribe``
        """
        token = uuid4()
        self._observers[token] = observer
        self._filters[token] = frozenset(event_types) if event_types else None
        self.logger.debug(f"Registered observer {token}")
        return token

    def unsubscribe(self, token: UUID) -> bool:
        """Remove an observer. Returns False if the token is unknown."""
        if token not in self._observers:
            return False
        del self._observers[token]
        del self._filters[token]
        return True

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def publish(self, event: Event) -> int:
        """
        Deliver an event to every interested observer.

        Args:
            event: The event to deliver

        Returns:
            Number of observers that handled the event without raising
        """
        delivered = 0
        # Copy so observers may unsubscribe while handling an event
        for token, observer in list(self._observers.items()):
            wanted = self._filters.get(token)
            if wanted is not None and event.type not in wanted:
                continue
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.delivery_failures += 1
                self.logger.error(f"Error in observer {token} handling {event.type}: {e}")
        return delivered
