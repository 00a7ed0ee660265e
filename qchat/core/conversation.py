"""
qchat :: Conversation State

Ordered chat history. Enforces the turn shape every chat template
expects:

    system* (user assistant)* user?

System turns only at the start, then strict user/assistant alternation.

INL - 2025
"""

import enum
from dataclasses import dataclass
from typing import Dict, List


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str

    def as_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ConversationState:
    """Chat history owned by one ChatSession."""

    def __init__(self):
        self.turns: List[Turn] = []

    def __len__(self) -> int:
        return len(self.turns)

    @property
    def last_role(self):
        return self.turns[-1].role if self.turns else None

    def append(self, role: Role, content: str) -> Turn:
        """Append a completed turn, rejecting anything that breaks alternation."""
        role = Role(role)
        last = self.last_role

        if role == Role.SYSTEM:
            if last not in (None, Role.SYSTEM):
                raise ValueError("system turns are only allowed at the start of a conversation")
        elif role == Role.USER:
            if last == Role.USER:
                raise ValueError("user turn must follow an assistant or system turn")
        elif last != Role.USER:
            raise ValueError("assistant turn must follow a user turn")

        turn = Turn(role, content)
        self.turns.append(turn)
        return turn

    def pop(self) -> Turn:
        """Remove and return the last turn."""
        return self.turns.pop()

    def evict_oldest_exchange(self) -> bool:
        """
        Drop the oldest user turn together with its assistant reply.

        System turns and the trailing (pending) user turn are never evicted.
        Returns False when nothing could be removed.
        """
        start = next((i for i, t in enumerate(self.turns) if t.role != Role.SYSTEM), None)
        if start is None:
            return False
        # Need a reply after it, otherwise this is the pending user turn
        if start + 1 >= len(self.turns) or self.turns[start + 1].role != Role.ASSISTANT:
            return False
        del self.turns[start:start + 2]
        return True

    def clear(self, keep_system: bool = True):
        if keep_system:
            self.turns = [t for t in self.turns if t.role == Role.SYSTEM]
        else:
            self.turns = []

    def as_messages(self) -> List[Dict[str, str]]:
        return [t.as_message() for t in self.turns]
