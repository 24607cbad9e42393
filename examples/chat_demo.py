"""Minimal demonstration of a streaming chat against a local Ollama server."""

import sys

from chat_core import ChatApp

if __name__ == "__main__":
    model = sys.argv[1] if len(sys.argv) > 1 else "llama3"
    question = sys.argv[2] if len(sys.argv) > 2 else "用一句话介绍一下你自己"
    with ChatApp.start() as app:
        if not app.transport.check_connection(app.server.base_url):
            print("Ollama server not reachable at", app.server.base_url)
            sys.exit(1)
        app.store.create(model)
        printed = 0

        def show(snapshot):
            global printed
            text = snapshot.message.content
            print(text[printed:], end="", flush=True)
            printed = len(text)

        print("User:", question)
        print("Assistant: ", end="")
        result = app.session.send_message(question, on_snapshot=show)
        print()
        if result.outcome == "failed":
            print("Error:", result.error.message)
