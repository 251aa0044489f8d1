"""
Chat thread kinds and their per-kind policies.

Task chats and conversations share one pipeline; everything that differs
between them (where membership lives, which room they broadcast to, which
event name clients listen for, whether a message also produces a durable
notification) is supplied by a ThreadPolicy looked up by ThreadKind.
"""
import enum
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Union
from db.models import Task, Conversation, User
from db.repository import Repository


class ThreadKind(str, enum.Enum):
    """Kind of chat thread a room or message belongs to."""
    TASK = "task"
    CONVERSATION = "conversation"


Thread = Union[Task, Conversation]


def user_room_key(user_id: int) -> str:
    """Personal room every connection of a user joins on connect."""
    return f"user:{user_id}"


class ThreadPolicy(ABC):
    """Behaviour shared by every thread kind; subclasses fill in the storage details."""

    kind: ThreadKind
    message_event: str
    notify_on_message: bool = False

    def room_key(self, thread_id: int) -> str:
        return f"{self.kind.value}:{thread_id}"

    def thread_filter(self, thread_id: int) -> Dict[str, int]:
        """Keyword arguments selecting this thread's messages in the repository."""
        return {f"{self.kind.value}_id": thread_id}

    @abstractmethod
    def load(self, repository: Repository, thread_id: int) -> Optional[Thread]:
        """Fetch the thread row, or None when it does not exist."""

    @abstractmethod
    def participant_ids(self, repository: Repository, thread: Thread) -> List[int]:
        """User ids allowed to read and write the thread."""

    def is_participant(self, repository: Repository, thread: Thread, user_id: int) -> bool:
        return user_id in self.participant_ids(repository, thread)

    @abstractmethod
    def touch(self, repository: Repository, thread_id: int, when: datetime) -> None:
        """Record activity on the thread. Caller commits."""

    def describe_message(self, thread: Thread, sender: User) -> Optional[Dict[str, str]]:
        """Notification text and link for a new message, or None when this kind does not notify."""
        return None


class TaskThreadPolicy(ThreadPolicy):
    """Task chat: the task's client and hired freelancer are the only participants."""

    kind = ThreadKind.TASK
    message_event = "receive_message"
    notify_on_message = True

    def load(self, repository: Repository, thread_id: int) -> Optional[Task]:
        return repository.get_task_by_id(thread_id)

    def participant_ids(self, repository: Repository, thread: Task) -> List[int]:
        return [user_id for user_id in (thread.client_id, thread.freelancer_id) if user_id is not None]

    def touch(self, repository: Repository, thread_id: int, when: datetime) -> None:
        repository.touch_task(thread_id, when)

    def describe_message(self, thread: Task, sender: User) -> Optional[Dict[str, str]]:
        return {
            "message": f'{sender.display_name} sent a new message in task "{thread.title}".',
            "url": f"/dashboard/projects/{thread.id}",
        }


class ConversationThreadPolicy(ThreadPolicy):
    """Conversation: membership is the conversation_participants table."""

    kind = ThreadKind.CONVERSATION
    message_event = "new_message"

    def load(self, repository: Repository, thread_id: int) -> Optional[Conversation]:
        return repository.get_conversation_by_id(thread_id)

    def participant_ids(self, repository: Repository, thread: Conversation) -> List[int]:
        return repository.get_conversation_participant_ids(thread.id)

    def is_participant(self, repository: Repository, thread: Conversation, user_id: int) -> bool:
        return repository.is_conversation_participant(thread.id, user_id)

    def touch(self, repository: Repository, thread_id: int, when: datetime) -> None:
        repository.touch_conversation(thread_id, when)


THREAD_POLICIES: Dict[ThreadKind, ThreadPolicy] = {
    ThreadKind.TASK: TaskThreadPolicy(),
    ThreadKind.CONVERSATION: ConversationThreadPolicy(),
}


def get_thread_policy(kind: ThreadKind) -> ThreadPolicy:
    """Look up the policy for a thread kind."""
    return THREAD_POLICIES[ThreadKind(kind)]
