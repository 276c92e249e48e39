"""Minimal demonstration of the chat service with streaming output."""

from chat_core import build_default_service

if __name__ == "__main__":
    service = build_default_service()
    conversation_id = service.create_conversation()
    question = "请用三句话介绍一下你自己"
    print("User:", question)
    print("Assistant: ", end="", flush=True)
    service.stream_message(
        question,
        conversation_id=conversation_id,
        on_delta=lambda chunk: print(chunk, end="", flush=True),
    )
    print()
