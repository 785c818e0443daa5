"""命令行聊天演示：边接收边打印助手回复。"""

import sys

from chat_core.api.service import get_default_session, shutdown


def main() -> None:
    session = get_default_session()
    printed = {"len": 0}

    def on_event(event, messages):
        if not messages or messages[-1].is_user:
            return
        text = messages[-1].content
        if event == "snapshot":
            sys.stdout.write(text[printed["len"]:])
            sys.stdout.flush()
            printed["len"] = len(text)
        elif event == "failed":
            sys.stdout.write(f"\n[错误] {text}")
        if event in ("complete", "failed"):
            sys.stdout.write("\n")
            printed["len"] = 0

    session.add_listener(on_event)
    for m in session.messages:
        print(("用户: " if m.is_user else "助手: ") + m.content)
    try:
        while True:
            text = input("> ")
            if text.strip() in ("/quit", "/exit"):
                break
            if session.submit(text):
                session.wait()
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        shutdown()


if __name__ == "__main__":
    main()
