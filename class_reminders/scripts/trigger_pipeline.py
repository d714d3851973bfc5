# class_reminders/scripts/trigger_pipeline.py
"""
Ручной прогон пайплайна через HTTP-ручки админки.
Запуск внутри контейнера:
    docker compose exec -T app-web python class_reminders/scripts/trigger_pipeline.py [generate|send|cleanup|status]
"""

import json
import os
import sys
import urllib.error
import urllib.request

# Внутри контейнера бьём по IPv4, чтобы не упасть на ::1
BASE_URL = os.getenv("REMINDERS_BASE_URL", "http://127.0.0.1:8080")

ACTIONS = {
    "status": ("GET", "/class-reminders/status"),
    "generate": ("POST", "/class-reminders/generate"),
    "send": ("POST", "/class-reminders/send"),
    "cleanup": ("POST", "/class-reminders/cleanup"),
}


def call(action: str) -> int:
    method, path = ACTIONS[action]
    req = urllib.request.Request(f"{BASE_URL}{path}", data=b"" if method == "POST" else None, method=method)
    token = os.getenv("ADMIN_TOKEN")
    if token:
        req.add_header("X-Admin-Token", token)

    print(f"[req] {method} {path} token={'set' if token else 'none'}")
    try:
        with urllib.request.urlopen(req, timeout=60) as resp:
            body = json.loads(resp.read().decode() or "{}")
            print("[resp]", resp.status, json.dumps(body, ensure_ascii=False, indent=2))
            return 0
    except urllib.error.HTTPError as e:
        print("[resp-HTTPError]", e.code, e.read().decode())
    except Exception as e:
        print("[resp-ERR]", repr(e))
    return 1


def main(argv):
    actions = argv or ["generate", "send", "status"]
    unknown = [a for a in actions if a not in ACTIONS]
    if unknown:
        print(f"unknown action(s): {unknown}; choose from {sorted(ACTIONS)}")
        return 2
    code = 0
    for action in actions:
        code = call(action) or code
    return code


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
