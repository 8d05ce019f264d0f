"""Interface for event bus and pub/sub messaging.

Decouples the workflow core from live subscribers: a transition is durably
recorded whether or not anybody is listening.
"""

from typing import Any, Awaitable, Callable, Dict, Protocol

WORKFLOW_EVENTS_TOPIC = "workflow-events"
TASK_PROGRESS_TOPIC = "task-progress"

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class IEventBus(Protocol):
    """Interface for topic based publish-subscribe messaging.

    Subscriptions sharing a group id split the messages of a topic between
    them; different groups each see every message.
    """

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        """Publish a message to a topic.

        Returns once the message is accepted; handlers run asynchronously.

        Args:
            topic: Topic name
            message: JSON-serializable payload
        """
        ...

    async def subscribe(self, topic: str, group_id: str, handler: Handler) -> str:
        """Subscribe to a topic.

        Args:
            topic: Topic to listen on
            group_id: Consumer group the handler belongs to
            handler: Async function to handle messages

        Returns:
            Subscription ID for later unsubscribe
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...

    async def close(self) -> None:
        ...
