#!/usr/bin/env python3
"""
Seed script — creates a small dataset for poking at the API by hand.

Creates:
  • 8 users (profiles)
  • A follow graph (each user follows 3 others)
  • 3 posts per user, uploaded through the media flow, spread over a couple
    of collections per user
  • Some likes and comments across posts

Expects the API to run with AUTH_MODE=header so the script can act as any
user via X-User-Id. Run after docker compose up:
  python scripts/seed_data.py --api-url http://localhost:8000

All IDs are printed so you can use them in curl commands.
"""
import argparse
import json
import random
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional


BASE_USERS = [
    ("alice.dances", "Alice Chen"),
    ("bob_builds", "Bob Martinez"),
    ("carol.cooks", "Carol Singh"),
    ("dave_skates", "Dave Kim"),
    ("eve.travels", "Eve Johnson"),
    ("frank_films", "Frank Williams"),
    ("grace.garden", "Grace Li"),
    ("henry_hikes", "Henry Brown"),
]

COLLECTIONS = ["Highlights", "Behind the scenes", "Tutorials"]

SAMPLE_TITLES = [
    "Sunrise timelapse from the ridge",
    "Three-minute pasta, no shortcuts",
    "Kickflip attempt #47 (it lands!)",
    "Street food tour in 60 seconds",
    "How I edit on my phone",
    "Rainy day window garden",
    "First drone flight over the bay",
    "One-take dance cover",
    "Fixing a flat in under two minutes",
    "Morning routine, honest version",
]

SAMPLE_COMMENTS = [
    "This is so good 🔥",
    "How long did this take?",
    "Saving this for later",
    "The lighting here is perfect",
    "Tutorial please!",
    "Watched it five times already",
]

# Not a playable video — the API only checks declared type and size
PLACEHOLDER_VIDEO = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 2048
PLACEHOLDER_IMAGE = b"\x89PNG\r\n\x1a\n" + b"\x00" * 512


@dataclass
class ApiClient:
    base_url: str

    def _send(self, method: str, path: str, user_id: Optional[str], data: Optional[dict]) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if user_id:
            headers["X-User-Id"] = user_id
        body = json.dumps(data).encode() if data is not None else None
        req = urllib.request.Request(url, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                raw = resp.read()
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as e:
            body = e.read().decode()
            print(f"  HTTP {e.code} on {method} {path}: {body}")
            return {}

    def post(self, path: str, user_id: Optional[str] = None, data: Optional[dict] = None) -> dict:
        return self._send("POST", path, user_id, data if data is not None else {})

    def get(self, path: str, user_id: Optional[str] = None) -> dict:
        return self._send("GET", path, user_id, None)

    def upload(self, user_id: str, kind: str, content_type: str, payload: bytes) -> str:
        """Begin → PUT bytes to the pre-signed URL → finalize. Returns the media id."""
        ticket = self.post(
            "/media/uploads",
            user_id,
            {"kind": kind, "content_type": content_type, "size_bytes": len(payload)},
        )
        if not ticket:
            return ""
        target = ticket["upload_target"]
        req = urllib.request.Request(
            target["url"], data=payload, headers=target["headers"], method=target["method"]
        )
        try:
            with urllib.request.urlopen(req, timeout=30):
                pass
        except urllib.error.URLError as e:
            print(f"  Upload of {kind} failed: {e}")
            return ""
        self.post(f"/media/{ticket['media_id']}/finalize", user_id)
        return ticket["media_id"]


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for API at {client.base_url} ...")
    for i in range(retries):
        try:
            result = client.get("/health")
            if result.get("status") == "ok":
                print("  API is ready!\n")
                return
        except OSError:
            pass
        time.sleep(3)
    raise RuntimeError(f"API not reachable at {client.base_url} after {retries} retries")


def main(api_url: str) -> None:
    client = ApiClient(api_url)
    wait_for_api(client)

    # ── Create users ─────────────────────────────────────────────────────
    print("Creating users...")
    user_ids: list[str] = []
    for handle, display_name in BASE_USERS:
        user_id = f"seed-{handle.replace('.', '-')}"
        result = client.post("/users", user_id, {"handle": handle, "display_name": display_name})
        if result.get("user_id"):
            user_ids.append(user_id)
            print(f"  ✓ {handle} ({user_id})")
        else:
            print(f"  ✗ Failed to create {handle}")

    if not user_ids:
        print("No users created — aborting")
        return

    # ── Create follow graph ───────────────────────────────────────────────
    print("\nCreating follow relationships...")
    for follower_id in user_ids:
        followees = random.sample([u for u in user_ids if u != follower_id], k=min(3, len(user_ids) - 1))
        for followee_id in followees:
            client.post(f"/users/{followee_id}/follow", follower_id)
    print("  ✓ Follow graph created")

    # ── Create posts ──────────────────────────────────────────────────────
    print("\nUploading media and publishing posts...")
    post_ids: list[str] = []
    for user_id in user_ids:
        for i in range(3):
            media_id = client.upload(user_id, "video", "video/mp4", PLACEHOLDER_VIDEO)
            thumb_id = client.upload(user_id, "image", "image/png", PLACEHOLDER_IMAGE)
            if not media_id:
                continue
            result = client.post(
                "/posts",
                user_id,
                {
                    "media_id": media_id,
                    "thumbnail_media_id": thumb_id or None,
                    "title": random.choice(SAMPLE_TITLES),
                    # Creates the collection on first use, reuses it after
                    "new_collection_title": COLLECTIONS[i % 2],
                },
            )
            if result.get("post_id"):
                post_ids.append(result["post_id"])
    print(f"  ✓ {len(post_ids)} posts created")

    # ── Likes and comments ────────────────────────────────────────────────
    print("\nAdding likes and comments...")
    likes = comments = 0
    for post_id in post_ids:
        for user_id in random.sample(user_ids, k=random.randint(0, 5)):
            if client.post(f"/posts/{post_id}/like", user_id):
                likes += 1
        for user_id in random.sample(user_ids, k=random.randint(0, 2)):
            if client.post(f"/posts/{post_id}/comments", user_id, {"text": random.choice(SAMPLE_COMMENTS)}):
                comments += 1
    print(f"  ✓ {likes} likes, {comments} comments added")

    # ── Print summary ─────────────────────────────────────────────────────
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    u = user_ids[0]
    print("# Read the global feed:")
    print(f"  curl -s -H 'X-User-Id: {u}' '{api_url}/feed?page_size=5' | python3 -m json.tool\n")
    print(f"# Collections of '{BASE_USERS[0][0]}':")
    print(f"  curl -s -H 'X-User-Id: {u}' '{api_url}/users/{u}/collections' | python3 -m json.tool\n")
    if post_ids:
        print("# Toggle a like:")
        print(f"  curl -s -X POST -H 'X-User-Id: {u}' '{api_url}/posts/{post_ids[0]}/like/toggle'\n")
    print("# Check Jaeger traces: http://localhost:16686")
    print("# Check Prometheus: http://localhost:9090")
    print("# Check MinIO: http://localhost:9001 (minioadmin/minioadmin)")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the cliphub API")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    args = parser.parse_args()
    main(args.api_url)
