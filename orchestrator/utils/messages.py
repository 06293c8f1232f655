"""SMS text templates sent by the orchestrator to contacts and agents."""


def agent_at_capacity_message(max_chats: int) -> str:
    return f"You are already handling the maximum number of chats ({max_chats})."


def no_pending_requests_message() -> str:
    return "There are no pending connection requests."


def no_active_chat_message() -> str:
    return "You have no active chat right now."


def session_started_agent_message(user_label: str) -> str:
    return f"Chat started with {user_label}. Reply END to finish the chat."


def session_started_user_message() -> str:
    return "You are now connected to an agent. You can message them directly."


def session_ended_user_message() -> str:
    return "Your chat with the agent has ended. Thank you!"


def session_ended_agent_message(user_phone: str, reason: str) -> str:
    return f"Chat with {user_phone} has ended ({reason})."


def already_in_session_message() -> str:
    return "You already have an active chat with an agent."


def request_already_pending_message() -> str:
    return "Your request has already been sent. Please wait for an agent."


def request_sent_message() -> str:
    return "Your request was sent to our agents. Please wait to be connected."


def all_agents_busy_message() -> str:
    return "All of our agents are busy right now. We'll connect you as soon as one is free."


def request_expired_message() -> str:
    return "No agent was available to take your request. Please try again later."


def connection_request_message(user_label: str, user_phone: str, initial_message: str) -> str:
    """Request sent to every available agent."""
    return (
        f"New chat request from {user_label} ({user_phone})\n\n"
        f"First message: {initial_message}\n\n"
        f"Reply ACCEPT to take the chat."
    )


def agent_chat_message(text: str) -> str:
    return f"Agent: {text}"


def user_chat_message(user_label: str, text: str) -> str:
    return f"{user_label}: {text}"


def connection_failed_message() -> str:
    return "Could not create the chat. Please try again."


def default_agent_request_message() -> str:
    return "User requesting agent assistance"
