"""Channel points reward client (Twitch Helix custom rewards)."""

from __future__ import annotations

from typing import Callable, Optional, Tuple

import requests
from flask import current_app

from tumulte.gamification.errors import RewardProviderError


REWARDS_PATH = "/channel_points/custom_rewards"
REDEMPTIONS_PATH = REWARDS_PATH + "/redemptions"

Credentials = Callable[[str], Tuple[str, str]]


def _settings() -> dict:
    cfg = current_app.config
    return {
        "base": (cfg.get("TWITCH_API_BASE") or "https://api.twitch.tv/helix").rstrip("/"),
        "client_id": (cfg.get("TWITCH_CLIENT_ID") or "").strip(),
        "timeout": int(cfg.get("TWITCH_HTTP_TIMEOUT") or 20),
    }


def call_rewards_api(method: str, access_token: str, *, params: dict | None = None, payload: dict | None = None,
                     path: str = REWARDS_PATH) -> dict:
    """Raw call. Returns {"ok", "status", "data", "error"} and never raises."""
    s = _settings()
    if not s["client_id"]:
        return {"ok": False, "status": 0, "data": [], "error": "TWITCH_CLIENT_ID not set"}
    headers = {
        "Client-Id": s["client_id"],
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }
    try:
        r = requests.request(method, s["base"] + path, headers=headers, params=params, json=payload, timeout=s["timeout"])
        j = r.json() if r.content else {}
        if 200 <= r.status_code < 300:
            return {"ok": True, "status": r.status_code, "data": j.get("data") or [], "error": None}
        return {"ok": False, "status": r.status_code, "data": [], "error": j.get("message") or f"HTTP {r.status_code}"}
    except Exception as e:
        return {"ok": False, "status": 0, "data": [], "error": str(e)}


class TwitchRewardProvider:
    """Reward provider port backed by the Helix API.

    ``credentials(streamer_id)`` returns ``(broadcaster_id, access_token)``; the
    token lifecycle lives outside this engine.
    """

    def __init__(self, credentials: Credentials):
        self.credentials = credentials

    def _call(self, streamer_id: str, method: str, *, params: dict | None = None, payload: dict | None = None,
              path: str = REWARDS_PATH) -> dict:
        broadcaster_id, token = self.credentials(streamer_id)
        query = {"broadcaster_id": broadcaster_id}
        query.update(params or {})
        return call_rewards_api(method, token, params=query, payload=payload, path=path)

    def create_reward(self, streamer_id: str, title: str, cost: int, *, color: str | None = None) -> str:
        """Create a reward or adopt the existing one with the same title."""
        payload = {"title": title[:45], "cost": max(1, int(cost)), "is_enabled": True}
        if color:
            payload["background_color"] = color
        res = self._call(streamer_id, "POST", payload=payload)
        if res["ok"] and res["data"]:
            return str(res["data"][0]["id"])

        if res["status"] == 400 and "DUPLICATE" in (res["error"] or "").upper():
            listed = self._call(streamer_id, "GET", params={"only_manageable_rewards": "true"})
            for item in listed["data"]:
                if (item.get("title") or "") == payload["title"]:
                    current_app.logger.info("reward %s adopted by title for streamer %s", item.get("id"), streamer_id)
                    return str(item["id"])

        raise RewardProviderError(res["error"] or "reward creation failed", status_code=res["status"] or None)

    def get_state(self, streamer_id: str, reward_id: str) -> Optional[str]:
        res = self._call(streamer_id, "GET", params={"id": reward_id})
        if res["status"] == 404 or (res["ok"] and not res["data"]):
            return None
        if not res["ok"]:
            raise RewardProviderError(res["error"] or "reward lookup failed", status_code=res["status"] or None)
        item = res["data"][0]
        return "paused" if item.get("is_paused") or not item.get("is_enabled", True) else "active"

    def exists(self, streamer_id: str, reward_id: str) -> bool:
        return self.get_state(streamer_id, reward_id) is not None

    def set_state(self, streamer_id: str, reward_id: str, state: str) -> None:
        if state == "deleted":
            res = self._call(streamer_id, "DELETE", params={"id": reward_id})
            if res["status"] == 404:
                return
        elif state in ("active", "paused"):
            res = self._call(
                streamer_id,
                "PATCH",
                params={"id": reward_id},
                payload={"is_enabled": True, "is_paused": state == "paused"},
            )
        else:
            raise ValueError(f"Unsupported reward state: {state}")
        if not res["ok"]:
            raise RewardProviderError(res["error"] or f"could not set reward state {state}", status_code=res["status"] or None)

    def update_reward(self, streamer_id: str, reward_id: str, *, cost: int) -> None:
        res = self._call(streamer_id, "PATCH", params={"id": reward_id}, payload={"cost": max(1, int(cost))})
        if not res["ok"]:
            raise RewardProviderError(res["error"] or "reward update failed", status_code=res["status"] or None)

    def refund_redemption(self, streamer_id: str, redemption_id: str, *, reward_id: str | None = None) -> None:
        """Cancel an unfulfilled redemption so the viewer gets their points back."""
        if not reward_id:
            raise RewardProviderError("reward id required to cancel a redemption")
        res = self._call(
            streamer_id,
            "PATCH",
            params={"reward_id": reward_id, "id": redemption_id},
            payload={"status": "CANCELED"},
            path=REDEMPTIONS_PATH,
        )
        if not res["ok"]:
            raise RewardProviderError(res["error"] or "redemption refund failed", status_code=res["status"] or None)
