import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from urllib import parse

from meetai.schemas.meeting import MeetingStatus
from meetai.services.agent_store import AgentStore
from meetai.services.meeting_state_machine import AgentNotFoundError, MeetingNotFoundError
from meetai.services.meeting_store import MeetingStore
from meetai.services.openai_completion_client import OpenAiCompletionClient
from meetai.services.stream_chat_client import StreamChatClient

logger = logging.getLogger(__name__)

CHAT_HISTORY_LIMIT = 5
AVATAR_API_URL = "https://api.dicebear.com/9.x"


class EmptyCompletionError(Exception):
    pass


@dataclass(frozen=True)
class ChatReplyResult:
    replied: bool
    text: str | None = None


def generate_avatar_uri(seed: str, variant: str = "bottts-neutral") -> str:
    return f"{AVATAR_API_URL}/{variant}/svg?{parse.urlencode({'seed': seed})}"


def build_chat_instructions(summary: str | None, agent_instructions: str | None) -> str:
    return (
        "You are an AI assistant helping the user revisit a recently completed meeting.\n"
        "Below is a summary of the meeting, generated from the transcript:\n\n"
        f"{summary or ''}\n\n"
        "The following are your original instructions from the live meeting assistant. "
        "Please continue to follow these behavioral guidelines as you assist the user:\n\n"
        f"{agent_instructions or ''}\n\n"
        "The user may ask questions about the meeting, request clarifications, or ask for "
        "follow-up actions. Always base your responses on the meeting summary above.\n\n"
        "You also have access to the recent conversation history between you and the user. "
        "Use the context of previous messages to provide relevant, coherent, and helpful "
        "responses. If the user's question refers to something discussed earlier, make sure "
        "to take that into account and maintain continuity in the conversation.\n\n"
        "If the summary does not contain enough information to answer a question, politely "
        "let the user know.\n\n"
        "Be concise, helpful, and focus on providing accurate information from the meeting "
        "and the ongoing conversation."
    )


def build_chat_history(
    channel_messages: Sequence[Mapping[str, Any]],
    *,
    agent_id: str,
    exclude_message_id: str | None = None,
    limit: int = CHAT_HISTORY_LIMIT,
) -> list[dict[str, str]]:
    history: list[dict[str, str]] = []
    for message in channel_messages:
        if exclude_message_id and message.get("id") == exclude_message_id:
            continue
        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        author = message.get("user")
        author_id = author.get("id") if isinstance(author, Mapping) else None
        history.append(
            {
                "role": "assistant" if author_id == agent_id else "user",
                "content": text,
            },
        )
    return history[-limit:] if limit > 0 else []


class ChatReplyService:
    def __init__(
        self,
        meeting_store: MeetingStore,
        agent_store: AgentStore,
        chat_client: StreamChatClient,
        completion_client: OpenAiCompletionClient,
        history_limit: int = CHAT_HISTORY_LIMIT,
    ) -> None:
        self.meeting_store = meeting_store
        self.agent_store = agent_store
        self.chat_client = chat_client
        self.completion_client = completion_client
        self.history_limit = history_limit

    def reply(
        self,
        *,
        user_id: str,
        channel_id: str,
        text: str,
        message_id: str | None = None,
    ) -> ChatReplyResult:
        meeting = self.meeting_store.get_by_id(channel_id)
        if not meeting or meeting.get("status") != MeetingStatus.completed.value:
            raise MeetingNotFoundError(f"Completed meeting {channel_id} not found.")

        agent = self.agent_store.get_by_id(str(meeting.get("agent_id")))
        if not agent:
            raise AgentNotFoundError(f"Agent {meeting.get('agent_id')} not found.")

        agent_id = str(agent["id"])
        if user_id == agent_id:
            return ChatReplyResult(replied=False)

        channel_messages = self.chat_client.get_channel_messages(channel_id)
        history = build_chat_history(
            channel_messages,
            agent_id=agent_id,
            exclude_message_id=message_id,
            limit=self.history_limit,
        )
        reply_text = self.completion_client.complete(
            [
                {
                    "role": "system",
                    "content": build_chat_instructions(
                        meeting.get("summary"),
                        agent.get("instructions"),
                    ),
                },
                *history,
                {"role": "user", "content": text},
            ],
        )
        if not reply_text:
            raise EmptyCompletionError("No response from the language model.")

        agent_name = str(agent.get("name") or agent_id)
        self.chat_client.upsert_user(
            user_id=agent_id,
            name=agent_name,
            image=generate_avatar_uri(agent_name),
        )
        self.chat_client.send_message(channel_id=channel_id, user_id=agent_id, text=reply_text)
        logger.info(
            "Chat reply posted channel_id=%s agent_id=%s history_count=%s",
            channel_id,
            agent_id,
            len(history),
        )
        return ChatReplyResult(replied=True, text=reply_text)
