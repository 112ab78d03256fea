"""Stand-in for the backend CLI, driven by a scenario name.

Invoked as ``python fake_backend.py <scenario> [arg] --print ...``; every flag
the runner appends after the scenario is ignored except where a scenario
echoes argv back.
"""

from __future__ import annotations

import json
import os
import signal
import sys
import time


def _emit(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


def _assistant(text, stop_reason=None):
    message = {"content": [{"type": "text", "text": text}]}
    if stop_reason:
        message["stop_reason"] = stop_reason
    return {"type": "assistant", "message": message}


def main(argv):
    scenario = argv[1]
    extra = argv[2] if len(argv) > 2 and not argv[2].startswith("--") else ""

    if scenario == "result":
        sys.stdin.read()
        _emit({"result": "4", "usage": {"input_tokens": 5, "output_tokens": 1}})
        return 0

    if scenario == "echo":
        stdin = sys.stdin.read()
        _emit({"result": stdin, "argv": argv[2:]})
        return 0

    if scenario == "text":
        sys.stdin.read()
        sys.stdout.write("  plain answer  \n")
        return 0

    if scenario == "fail":
        sys.stdin.read()
        sys.stderr.write("rate limited\n")
        return 1

    if scenario == "reject-early":
        sys.stderr.write("rate limited\n")
        sys.stderr.flush()
        return 1

    if scenario == "fail-stdout":
        sys.stdin.read()
        sys.stdout.write("quota exhausted\n")
        return 2

    if scenario == "garbage":
        sys.stdin.read()
        sys.stdout.write("this is not json\n")
        return 0

    if scenario == "flood":
        payload = sys.stdin.read()
        sys.stderr.write("w" * (512 * 1024))
        sys.stderr.flush()
        sys.stdout.write("x" * (512 * 1024) + "\n")
        sys.stdout.flush()
        _emit({"result": "flooded", "usage": {"input_tokens": len(payload), "output_tokens": 0}})
        return 0

    if scenario == "hang":
        time.sleep(60)
        return 0

    if scenario == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        if extra:
            with open(extra, "w") as fp:
                fp.write("ready")
        time.sleep(60)
        return 0

    if scenario == "close-stdin":
        os.close(0)
        time.sleep(2)
        return 0

    if scenario == "stream":
        sys.stdin.read()
        _emit({"type": "system", "subtype": "init"})
        line = json.dumps(_assistant("Hel")) + "\n"
        # Split one event across two writes.
        sys.stdout.write(line[:10])
        sys.stdout.flush()
        time.sleep(0.05)
        sys.stdout.write(line[10:])
        sys.stdout.flush()
        sys.stdout.write("{not valid json\n")
        _emit({"type": "user", "message": {"content": "ignored"}})
        _emit(_assistant("lo", stop_reason="end_turn"))
        _emit({"type": "result", "subtype": "success", "result": "Hello"})
        return 0

    if scenario == "stream-quiet":
        sys.stdin.read()
        _emit({"type": "system", "subtype": "init"})
        _emit({"type": "result", "subtype": "success", "result": ""})
        return 0

    if scenario == "stream-fail":
        sys.stdin.read()
        _emit(_assistant("partial"))
        sys.stderr.write("crashed\n")
        return 3

    if scenario == "stream-forever":
        sys.stdin.read()
        if extra:
            with open(extra, "w") as fp:
                fp.write(str(os.getpid()))
        _emit(_assistant("first"))
        while True:
            time.sleep(0.05)

    sys.stderr.write("unknown scenario {0}\n".format(scenario))
    return 64


if __name__ == "__main__":
    sys.exit(main(sys.argv))
