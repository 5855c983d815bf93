"""Conversation starters spoken when a session begins."""

from __future__ import annotations

import random
from typing import Optional

CONVERSATION_STARTERS: tuple[str, ...] = (
    "Hi there. I'm really glad you reached out today. What's been on your mind?",
    "Hello. It's good to connect with you. How are you feeling right now?",
    "Hi. Thank you for being here. What's bringing you in today?",
    "Hello. I'm here to listen. What would you like to share with me?",
    "Hi there. I appreciate you taking this step. How has your day been treating you?",
    "Hello. It's nice to meet you. What's been weighing on your heart lately?",
    "Hi. I'm glad we're having this conversation. What feels most important to talk about right now?",
    "Hello. Thank you for trusting me with your time. How are you holding up today?",
)


def random_greeting(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(CONVERSATION_STARTERS)


__all__ = ["CONVERSATION_STARTERS", "random_greeting"]
