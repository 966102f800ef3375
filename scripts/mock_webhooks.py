from __future__ import annotations

import argparse
import json
import sys
import time
import urllib.error
import urllib.request

from backend.app.services.webhooks import sign_body


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def cloud_payload(phone_number_id: str, index: int) -> dict:
    wa_id = f"55119{index:08d}"
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "mock-waba",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "contacts": [{"wa_id": wa_id, "profile": {"name": f"Mock Lead {index}"}}],
                            "messages": [
                                {
                                    "id": f"wamid.mock.{index}",
                                    "from": wa_id,
                                    "timestamp": str(int(time.time())),
                                    "type": "text",
                                    "text": {"body": f"mock inbound message {index}"},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def gateway_payload(owner: str, index: int) -> dict:
    jid = f"55119{index:08d}@s.whatsapp.net"
    return {
        "EventType": "messages",
        "owner": owner,
        "chat": {"wa_chatid": jid, "name": f"Mock Lead {index}"},
        "message": {
            "messageid": f"GW-MOCK-{index}",
            "chatid": jid,
            "fromMe": False,
            "messageType": "Conversation",
            "messageTimestamp": int(time.time() * 1000),
            "text": f"mock gateway message {index}",
        },
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock WhatsApp webhooks to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--provider", choices=["cloud_api", "gateway"], default="cloud_api")
    parser.add_argument("--instance-ref", required=True, help="phone_number_id or gateway path id")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--secret", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    if args.provider == "cloud_api":
        endpoint = f"{base_url}/webhook"
    else:
        endpoint = f"{base_url}/webhook/gateway/{args.instance_ref}"

    for index in range(args.start_index, args.start_index + args.count):
        if args.provider == "cloud_api":
            payload = cloud_payload(args.instance_ref, index)
        else:
            payload = gateway_payload(args.instance_ref, index)
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers: dict[str, str] = {}
        if args.secret:
            signed = sign_body(body, args.secret)
            if args.provider == "cloud_api":
                headers["X-Hub-Signature-256"] = signed
            else:
                headers["X-Webhook-Signature"] = signed
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {args.provider}#{index} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
