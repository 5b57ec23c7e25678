from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from queue import Queue

# Ensure repository root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from zkillbot.config import load_config  # noqa: E402
from zkillbot.live.discord_hud import DiscordHUD  # noqa: E402
from zkillbot.live.dispatcher import EventDispatcher  # noqa: E402
from zkillbot.live.store import load_store  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Push a synthetic kill through the dispatcher")
    parser.add_argument("--config", default="configs/zkillbot.yaml")
    parser.add_argument("--entity-id", type=int, required=True, help="Tracked EVE id to attribute the loss to")
    parser.add_argument("--value", type=float, default=1_000_000_000.0)
    args = parser.parse_args()

    cfg = load_config(args.config)
    store = load_store(cfg["storage"]["path"])
    if store.sink_count(args.entity_id) == 0:
        print(f"No channel tracks {args.entity_id}; add it with !track first.")
        return

    hud = DiscordHUD(cfg)
    hud.start()
    dispatcher = EventDispatcher(store, raw_queue=Queue(), notifier=hud)

    # Synthetic killmail matching the live feed schema
    fake_kill = {
        "killmail_id": 1,
        "killmail_time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "solar_system_id": 30000142,
        "victim": {"character_id": args.entity_id, "ship_type_id": 587},
        "attackers": [{"character_id": 90000001, "final_blow": True}],
        "zkb": {"totalValue": args.value, "url": "https://zkillboard.com/kill/1/"},
    }

    print("Pushing synthetic kill through the dispatcher...")
    for action in dispatcher.handle_message(json.dumps(fake_kill)):
        print(f" -> {action.sink_id}: {action.text!r}")
        hud.deliver(action)

    # Give the delivery worker time to post
    time.sleep(5)
    hud.stop()
    print("Manual test finished; check the Discord channel(s).")


if __name__ == "__main__":
    main()
