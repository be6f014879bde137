"""
Rule-based triage of unread message batches.

One rule set serves two roles: fast triage before inference (``classify``) and
the deterministic fallback used when inference is unavailable
(``fallback_decision``). Only the priority attached to each rule differs.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..models.core import (Message, NotificationDecision, Priority, UserIdentity, UserNotificationPreferences,
                           UserNotificationProfile, Verdict)

FALLBACK_MARKER = '(fallback heuristic)'

ACKNOWLEDGEMENTS = frozenset({
    'ok', 'okay', 'k', 'kk', 'thanks', 'thank you', 'thx', 'ty', 'lol', 'haha', 'ha', 'nice', 'cool', 'sure', 'yep',
    'yup', 'nope', 'got it', 'sounds good', 'np', 'no problem'
})

SECOND_PERSON = re.compile(r"\b(you|your|yours|you're|youre|you'll|you've|u|ur)\b", re.IGNORECASE)

MENTION = 'mention'
KEYWORD = 'keyword'
DIRECT_QUESTION = 'direct_question'

# Triage is stricter about keywords than the fallback path
TRIAGE_PRIORITY: Dict[str, Priority] = {MENTION: Priority.HIGH, KEYWORD: Priority.HIGH, DIRECT_QUESTION: Priority.MEDIUM}
FALLBACK_PRIORITY: Dict[str, Priority] = {
    MENTION: Priority.HIGH,
    KEYWORD: Priority.MEDIUM,
    DIRECT_QUESTION: Priority.MEDIUM
}

RULE_REASONS = {
    MENTION: 'You were mentioned',
    KEYWORD: 'Matched priority keyword "{matched}"',
    DIRECT_QUESTION: 'Direct question addressed to you',
}


@dataclass(frozen=True)
class RuleMatch:
    rule: str
    message: Message
    matched: Optional[str] = None

    def reason(self) -> str:
        return RULE_REASONS[self.rule].format(matched=self.matched)


@dataclass(frozen=True)
class HeuristicResult:
    verdict: Verdict
    reason: str
    priority: Priority = Priority.LOW
    match: Optional[RuleMatch] = None


def effective_keywords(preferences: UserNotificationPreferences, profile: UserNotificationProfile) -> List[str]:
    """Union of priority and learned keywords, deduplicated case-insensitively."""
    seen = set()
    keywords = []
    for keyword in list(preferences.priority_keywords) + list(profile.learned_keywords):
        normalized = keyword.strip().lower()
        if normalized and normalized not in seen:
            seen.add(normalized)
            keywords.append(keyword.strip())
    return keywords


def _phrase_pattern(phrase: str, flags: int = re.IGNORECASE) -> 're.Pattern':
    words = [re.escape(w) for w in phrase.split()]
    return re.compile(r'(?<!\w)' + r'\s+'.join(words) + r'(?!\w)', flags)


def find_phrase(text: str, phrases: Iterable[str]) -> Optional[str]:
    """Return the first phrase found in text as a whole word or words."""
    for phrase in phrases:
        if phrase.strip() and _phrase_pattern(phrase).search(text):
            return phrase
    return None


def _name_patterns(identity: UserIdentity) -> List['re.Pattern']:
    """Patterns that name the user.

    The full display name matches in any case. A bare first name is often an
    ordinary word ("Will", "Mark"), so it only matches capitalised as written.
    """
    full = identity.display_name.strip()
    if not full:
        return []
    patterns = [_phrase_pattern(full)]
    first = full.split()[0]
    if len(first) >= 2 and first != full and first[0].isupper():
        patterns.append(_phrase_pattern(first, flags=0))
    return patterns


def names_user(text: str, identity: UserIdentity) -> bool:
    return any(p.search(text) for p in _name_patterns(identity))


def mentions_user(text: str, identity: UserIdentity) -> bool:
    """True if text @-mentions the user's handle or names them."""
    if identity.handle:
        handle = identity.handle.lstrip('@')
        if re.search(r'@' + re.escape(handle) + r'(?!\w)', text, re.IGNORECASE):
            return True
    return names_user(text, identity)


def is_direct_question(text: str, identity: UserIdentity) -> bool:
    stripped = text.strip()
    if not stripped.endswith('?'):
        return False
    return bool(SECOND_PERSON.search(stripped)) or names_user(stripped, identity)


def _strip_punctuation(text: str) -> str:
    chars = list(text.strip())
    while chars and (chars[0].isspace() or unicodedata.category(chars[0]).startswith('P')):
        chars.pop(0)
    while chars and (chars[-1].isspace() or unicodedata.category(chars[-1]).startswith('P')):
        chars.pop()
    return ''.join(chars)


def is_emoji_only(text: str) -> bool:
    significant = [c for c in text if not c.isspace() and c not in ('\u200d', '\ufe0f')]
    if not significant:
        return False
    # Symbols, modifiers and skin-tone selectors make up emoji sequences
    return all(unicodedata.category(c) in ('So', 'Sk', 'Mn') or 0x1F3FB <= ord(c) <= 0x1F3FF for c in significant)


def is_trivial(text: str) -> bool:
    """Acknowledgements, emoji and near-empty messages never warrant an alert."""
    trimmed = _strip_punctuation(text)
    if len(trimmed) < 3:
        return True
    return trimmed.lower() in ACKNOWLEDGEMENTS or is_emoji_only(trimmed)


def match_rules(messages: List[Message], identity: UserIdentity, keywords: List[str]) -> Optional[RuleMatch]:
    """Evaluate the notify rules in order; first match wins.

    Args:
        messages: Unread batch, oldest first
        identity: Recipient's display identity
        keywords: Effective keyword set

    Returns:
        The first matching rule, or None
    """
    if not messages:
        return None

    for message in reversed(messages):
        if mentions_user(message.text, identity):
            return RuleMatch(MENTION, message)

    for message in reversed(messages):
        found = find_phrase(message.text, keywords)
        if found:
            return RuleMatch(KEYWORD, message, matched=found)

    latest = messages[-1]
    if is_direct_question(latest.text, identity):
        return RuleMatch(DIRECT_QUESTION, latest)

    return None


def _touches_suppressed_topic(messages: List[Message], topics: Iterable[str]) -> Optional[str]:
    topics = list(topics)
    substantive = [m for m in messages if not is_trivial(m.text)]
    if not topics or not substantive:
        return None
    hits = [find_phrase(m.text, topics) for m in substantive]
    return hits[-1] if all(hits) else None


def classify(messages: List[Message], identity: UserIdentity, preferences: UserNotificationPreferences,
             profile: UserNotificationProfile) -> HeuristicResult:
    """
    Triage an unread batch without calling inference.

    Args:
        messages: Unread batch, oldest first
        identity: Recipient's display identity
        preferences: Recipient preferences
        profile: Recipient's learned profile

    Returns:
        HeuristicResult with the verdict and, for notify verdicts, the priority
    """
    if not messages:
        return HeuristicResult(Verdict.DEFINITELY_SKIP, 'No unread messages')

    match = match_rules(messages, identity, effective_keywords(preferences, profile))
    if match:
        return HeuristicResult(Verdict.DEFINITELY_NOTIFY, match.reason(), TRIAGE_PRIORITY[match.rule], match)

    topic = _touches_suppressed_topic(messages, profile.suppressed_topics)
    if topic:
        return HeuristicResult(Verdict.DEFINITELY_SKIP, f'Topic "{topic}" was previously marked not helpful')

    latest = messages[-1]
    if latest.is_bot:
        return HeuristicResult(Verdict.DEFINITELY_SKIP, 'Latest message is automated')
    if is_trivial(latest.text):
        return HeuristicResult(Verdict.DEFINITELY_SKIP, 'Latest message is a brief acknowledgement')

    return HeuristicResult(Verdict.NEEDS_INFERENCE, 'No heuristic rule matched')


def truncate_text(text: str, max_length: int = 100) -> str:
    text = ' '.join(text.split())
    if len(text) <= max_length:
        return text
    return text[:max_length - 3].rstrip() + '...'


def summarize_message(message: Message, max_length: int = 100) -> str:
    """Format a message as ``Sender: text`` within the length limit."""
    return truncate_text(f'{message.sender_name}: {message.text}', max_length)


def decision_from_heuristic(result: HeuristicResult, messages: List[Message], conversation_id: str, user_id: str,
                            cache_key: Optional[str], max_length: int = 100) -> NotificationDecision:
    """Turn a conclusive triage verdict into a decision."""
    notify = result.verdict == Verdict.DEFINITELY_NOTIFY
    return NotificationDecision(should_notify=notify,
                                reason=result.reason,
                                priority=result.priority,
                                source_conversation_id=conversation_id,
                                notification_text=summarize_message(result.match.message, max_length) if notify else None,
                                source_message_ids=tuple(m.message_id for m in messages),
                                cache_key=cache_key,
                                user_id=user_id)


def fallback_decision(messages: List[Message],
                      identity: UserIdentity,
                      preferences: UserNotificationPreferences,
                      profile: UserNotificationProfile,
                      conversation_id: str,
                      cache_key: Optional[str] = None,
                      cause: str = '',
                      max_length: int = 100) -> NotificationDecision:
    """
    Deterministic decision used when inference cannot be consulted.

    Args:
        messages: Unread batch, oldest first
        identity: Recipient's display identity
        preferences: Recipient preferences
        profile: Recipient's learned profile
        conversation_id: Source conversation
        cache_key: Cache key of the analysis
        cause: Short description of why inference was skipped
        max_length: Notification text limit

    Returns:
        NotificationDecision whose reason is marked as fallback-sourced
    """
    match = match_rules(messages, identity, effective_keywords(preferences, profile))
    suffix = f' {FALLBACK_MARKER}' + (f': {cause}' if cause else '')
    ids = tuple(m.message_id for m in messages)

    if match is None:
        return NotificationDecision(should_notify=False,
                                    reason=f'No notification rule matched{suffix}',
                                    priority=Priority.LOW,
                                    source_conversation_id=conversation_id,
                                    source_message_ids=ids,
                                    cache_key=cache_key,
                                    user_id=identity.user_id)

    return NotificationDecision(should_notify=True,
                                reason=f'{match.reason()}{suffix}',
                                priority=FALLBACK_PRIORITY[match.rule],
                                source_conversation_id=conversation_id,
                                notification_text=summarize_message(match.message, max_length),
                                source_message_ids=ids,
                                cache_key=cache_key,
                                user_id=identity.user_id)
