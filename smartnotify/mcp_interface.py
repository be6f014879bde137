"""
MCP Interface Layer using fastmcp for the notification engine.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from smartnotify.models.core import AnalysisResult, Message
from smartnotify.services.notification_engine import NotificationEngineError, build_default_engine
from smartnotify.services.stores import InMemoryMessageStore
from smartnotify.utils.config import config
from smartnotify.utils.health_check import get_system_info
from smartnotify.utils.logging_config import get_logger
from smartnotify.utils.timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Smart Notify')
engine = build_default_engine()


def _result_to_dict(result: AnalysisResult) -> Dict[str, Any]:
    decision = result.decision
    payload = {
        'outcome': result.outcome.value,
        'decision_id': decision.decision_id,
        'should_notify': decision.should_notify,
        'reason': decision.reason,
        'notification_text': decision.notification_text,
        'priority': decision.priority.value,
        'generated_at': to_iso(decision.generated_at),
        'degraded_context': result.degraded_context,
    }
    if result.messages_since_cache is not None:
        payload['messages_since_cache'] = result.messages_since_cache
    if result.delivery is not None:
        payload['delivered'] = result.delivery.delivered
        payload['presentation'] = result.delivery.presentation.value if result.delivery.presentation else None
        payload['suppressed_by'] = result.delivery.suppressed_by
    return payload


@mcp.tool()
def analyze_conversation_for_notification(conversation_id: str,
                                          user_id: str,
                                          requesting_user_id: str,
                                          regenerate: bool = False) -> Dict[str, Any]:
    """Decide whether a user should be notified about a conversation's unread messages.

    Args:
        conversation_id: Conversation to analyze
        user_id: Recipient of the notification
        requesting_user_id: Authenticated caller; must be the recipient
        regenerate: Ignore any cached decision

    Returns:
        Decision with outcome and delivery details

    Raises:
        Exception: If the caller is not allowed or the conversation is unknown
    """
    try:
        result = engine.analyze_conversation_for_notification(conversation_id,
                                                              user_id,
                                                              requesting_user_id=requesting_user_id,
                                                              regenerate=regenerate)
        return _result_to_dict(result)
    except NotificationEngineError as e:
        logger.error(f'Notification analysis rejected in MCP: {e}')
        raise Exception(f'Notification analysis failed: {e}')


@mcp.tool()
def submit_notification_feedback(decision_id: str, feedback: str, user_id: str) -> Dict[str, Any]:
    """Record whether a notification was helpful.

    Args:
        decision_id: Decision being rated
        feedback: 'helpful' or 'not_helpful'
        user_id: Authenticated caller; must own the decision

    Returns:
        The stored feedback record
    """
    try:
        record = engine.submit_feedback(decision_id, feedback, user_id)
    except (NotificationEngineError, ValueError) as e:
        logger.error(f'Feedback rejected in MCP: {e}')
        raise Exception(f'Feedback submission failed: {e}')
    return {'decision_id': decision_id, 'feedback': record.feedback.value, 'recorded_at': to_iso(record.timestamp)}


@mcp.tool()
def ingest_message(message_id: str,
                   conversation_id: str,
                   sender_id: str,
                   sender_name: str,
                   text: str,
                   created_at: Optional[str] = None,
                   is_bot: bool = False) -> int:
    """Feed a new chat message to the activity monitors.

    Args:
        message_id: Message ID
        conversation_id: Conversation the message was posted in
        sender_id: Author user ID
        sender_name: Author display name
        text: Message text
        created_at: ISO-8601 timestamp (now if omitted)
        is_bot: Whether the author is an automated sender

    Returns:
        Number of participants whose monitor received the message
    """
    message = Message(message_id=message_id,
                      conversation_id=conversation_id,
                      sender_id=sender_id,
                      sender_name=sender_name,
                      text=text,
                      created_at=from_iso(created_at) if created_at else utc_now(),
                      is_bot=is_bot)
    if isinstance(engine.message_store, InMemoryMessageStore):
        engine.message_store.add_message(message)
    return engine.ingest_message(message)


@mcp.tool()
def set_viewing_conversation(user_id: str, conversation_id: str, viewing: bool) -> bool:
    """Tell the engine whether a user currently has a conversation open."""
    engine.set_viewing(user_id, conversation_id, viewing)
    return viewing


@mcp.tool()
def update_notification_preferences(user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Update a user's notification preferences.

    Args:
        user_id: Preferences owner
        changes: Field names mapped to new values

    Returns:
        The stored preferences
    """
    try:
        return engine.update_preferences(user_id, changes).to_document()
    except ValueError as e:
        logger.error(f'Preference update rejected in MCP: {e}')
        raise Exception(f'Preference update failed: {e}')


@mcp.tool()
def register_user(user_id: str, display_name: Optional[str] = None) -> Dict[str, Any]:
    """Register a user so mentions and direct questions can be matched by name."""
    try:
        identity = engine.register_user(user_id, display_name)
    except NotificationEngineError as e:
        raise Exception(f'User registration failed: {e}')
    return {'user_id': identity.user_id, 'display_name': identity.display_name}


@mcp.tool()
def register_conversation(conversation_id: str,
                          participant_ids: List[str],
                          name: Optional[str] = None,
                          is_group: Optional[bool] = None) -> Dict[str, Any]:
    """Register a conversation and its participants.

    Args:
        conversation_id: Conversation ID
        participant_ids: User IDs taking part, at least two
        name: Optional display name used in group notification titles
        is_group: Defaults to true for more than two participants

    Returns:
        The registered conversation
    """
    try:
        conversation = engine.register_conversation(conversation_id, participant_ids, name=name, is_group=is_group)
    except (NotificationEngineError, ValueError) as e:
        logger.error(f'Conversation registration rejected in MCP: {e}')
        raise Exception(f'Conversation registration failed: {e}')
    return {
        'conversation_id': conversation.conversation_id,
        'participant_ids': list(conversation.participant_ids),
        'name': conversation.name,
        'is_group': conversation.is_group,
    }


@mcp.tool()
def mark_conversation_read(conversation_id: str, user_id: str) -> int:
    """Mark every message in a conversation as read by the user.

    Returns:
        Number of messages newly marked read
    """
    try:
        return engine.mark_conversation_read(conversation_id, user_id)
    except NotificationEngineError as e:
        raise Exception(f'Mark read failed: {e}')


@mcp.tool()
def get_notification_analytics(user_id: str, requesting_user_id: str, days: int = 30) -> Dict[str, Any]:
    """Summarize how useful a user's notifications have been.

    Args:
        user_id: User whose feedback is summarized
        requesting_user_id: Authenticated caller; must be the same user
        days: Trailing window in days

    Returns:
        Feedback counts, accuracy percentage and the most common false positives
    """
    try:
        return engine.get_notification_analytics(user_id, requesting_user_id, days=days).to_document()
    except (NotificationEngineError, ValueError) as e:
        logger.error(f'Analytics request rejected in MCP: {e}')
        raise Exception(f'Notification analytics failed: {e}')


@mcp.tool()
def get_notification_profile(user_id: str) -> Dict[str, Any]:
    """Return the learned notification profile for a user."""
    return engine.get_profile(user_id).to_document()


@mcp.tool()
def refresh_notification_profile(user_id: str) -> Dict[str, Any]:
    """Re-learn a user's profile from their feedback now."""
    return engine.refresh_profile(user_id).to_document()


@mcp.tool()
def health_status() -> Dict[str, Any]:
    """Report component health, configuration and analysis queue statistics."""
    info = get_system_info(config)
    info['dispatcher'] = engine.dispatcher.stats()
    return info


def main() -> None:
    engine.start()
    try:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        engine.shutdown()


if __name__ == '__main__':
    main()
