"""
Prompt construction for notification decisions.
"""

from datetime import datetime
from typing import Dict, List

from ..models.core import Message, NotificationRate, RetrievedContext, UserIdentity

SYSTEM_PROMPT = """
You are a notification assistant for people who work in busy team chats. Decide whether the
user should be interrupted by a push notification for the unread messages below.

Adapt your decision to the learned preferences derived from the user's feedback history.

ALWAYS NOTIFY if:
- The user is mentioned directly (@handle or by name)
- The user is asked a direct question ("Can you...", "Could you...", "Would you...")
- A task, review or deadline is assigned to the user
- A decision is made that changes the user's work
- A production issue or blocker affects the user

SHOULD NOTIFY if:
- A message contains one of the user's priority keywords or learned keywords
- The discussion continues a topic the user recently took part in
- Someone asks for feedback the user is likely to give

NEVER NOTIFY if:
- It is general or social chat that does not involve the user ("thanks", "lol", emoji)
- It is an FYI the user is not responsible for, or something the user already knows
- It comes from an automated sender
- It is about a topic the user has marked as not helpful

NOTIFICATION TEXT:
- Clear and actionable, at most {max_length} characters
- Format: "<Sender>: <key point>", e.g. "Sarah: Can you review the API design by EOD?"

PRIORITY:
- high: direct mentions, direct questions, urgent or production issues
- medium: priority keywords, important updates, indirect requests
- low: general, non-urgent information

Respond ONLY with a JSON object in exactly this format:
```json
{{
  "shouldNotify": true,
  "reason": "one or two sentence explanation",
  "notificationText": "text shown to the user, empty when shouldNotify is false",
  "priority": "high"
}}
```"""

STRICT_FORMAT_INSTRUCTION = ('Your previous reply could not be parsed. Reply with the JSON object only: no prose, '
                             'no code fences, keys shouldNotify (boolean), reason (string), notificationText '
                             '(string) and priority ("high", "medium" or "low").')

RATE_INSTRUCTIONS: Dict[NotificationRate, str] = {
    NotificationRate.HIGH: 'User appreciates frequent notifications. Lean towards notifying.',
    NotificationRate.MEDIUM: 'User prefers a moderate notification frequency. Balance importance against volume.',
    NotificationRate.LOW: 'User dislikes frequent notifications. Notify only for critical messages.',
}

RECENT_SAMPLE_SIZE = 10


def build_system_prompt(max_length: int = 100) -> str:
    return SYSTEM_PROMPT.format(max_length=max_length).strip()


def format_messages(messages: List[Message]) -> str:
    """Render messages one per line as ``[timestamp] Sender: text``."""
    return '\n'.join(f'[{m.created_at.isoformat()}] {m.sender_name}: {m.text}' for m in messages)


def _or_none(values, empty: str = 'None') -> str:
    return ', '.join(values) if values else empty


def build_user_prompt(context: RetrievedContext, identity: UserIdentity, now: datetime) -> str:
    """
    Render the assembled context as the user turn of the inference request.

    Args:
        context: Retrieved context for the analysis
        identity: Recipient's display identity
        now: Current time

    Returns:
        Prompt text
    """
    prefs = context.preferences
    profile = context.profile
    sections = []

    user_lines = [f'Name: {identity.display_name}']
    if identity.handle:
        user_lines.append(f'Handle: @{identity.handle.lstrip("@")}')
    if context.recent_activity:
        own = sum(1 for m in context.recent_activity if m.sender_id == identity.user_id)
        user_lines.append(f'Recent activity: {len(context.recent_activity)} messages across '
                          f'{len(context.active_conversation_ids)} conversations ({own} sent by the user)')
        user_lines.append('Recent messages:')
        user_lines.append(format_messages(list(reversed(context.recent_activity[:RECENT_SAMPLE_SIZE]))))
    elif context.degraded:
        user_lines.append('Recent activity: unavailable')
    sections.append('User Context:\n' + '\n'.join(user_lines))

    quiet = prefs.quiet_hours
    sections.append('User Preferences:\n'
                    f'- Quiet hours: {quiet.start} - {quiet.end} ({prefs.timezone})\n'
                    f'- Priority keywords: {_or_none(prefs.priority_keywords)}')

    if profile.total_feedback:
        sections.append('Learned User Preferences (from feedback history):\n'
                        f'- Notification frequency preference: {profile.preferred_notification_rate.value}\n'
                        f'- {RATE_INSTRUCTIONS[profile.preferred_notification_rate]}\n'
                        f'- Topics the user finds important: {_or_none(profile.learned_keywords, "None learned yet")}\n'
                        f"- Topics the user doesn't want notifications about: {_or_none(profile.suppressed_topics)}\n"
                        f'- Historical accuracy: {round(profile.accuracy * 100)}%')

    if context.related_history:
        related = '\n'.join(f'({r.score:.2f}) [{r.message.created_at.isoformat()}] {r.message.sender_name}: '
                            f'{r.message.text}' for r in context.related_history)
        sections.append('Related earlier messages (similarity score):\n' + related)

    sections.append(f'Current Time: {now.isoformat()}')
    sections.append('Conversation Messages (unread for user):\n' + format_messages(context.unread_messages))
    sections.append('Decide whether the user should be notified.')

    return '\n\n'.join(sections)
