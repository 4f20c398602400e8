"""
Create a Discord webhook for the monitor's channel.

Requires DISCORD_BOT_TOKEN in the environment (or .env). Prints the webhook
URL to put in DISCORD_WEBHOOK_URL.

Run with:
    python scripts/create_webhook.py <channel_id> [webhook name]
"""
import os
import sys

import httpx
from dotenv import load_dotenv

load_dotenv()

DISCORD_API = "https://discord.com/api/v10"

if len(sys.argv) < 2:
    sys.exit("usage: create_webhook.py <channel_id> [webhook name]")

channel_id = sys.argv[1]
name = sys.argv[2] if len(sys.argv) > 2 else "Belt UserOps Monitor"
token = os.getenv("DISCORD_BOT_TOKEN", "")
if not token:
    sys.exit("DISCORD_BOT_TOKEN is not set")

with httpx.Client(timeout=15) as c:
    r = c.post(
        f"{DISCORD_API}/channels/{channel_id}/webhooks",
        headers={"Authorization": f"Bot {token}"},
        json={"name": name},
    )
    if r.status_code >= 400:
        sys.exit(f"Discord returned {r.status_code}: {r.text}")
    hook = r.json()
    print(f"DISCORD_WEBHOOK_URL=https://discord.com/api/webhooks/{hook['id']}/{hook['token']}")
