"""Monday.com CRM client - payment-first signup registrations.

WHAT: Creates one item on the sales board for every partner/business plan
      bought through the ad funnel
WHY: Sales follows up on these buyers manually; the board is their queue

Non-blocking: every failure is logged and the call returns None.

REFERENCES:
    - https://developer.monday.com/api-reference/reference/items#create-an-item
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

CREATE_ITEM_MUTATION = """
mutation ($boardId: ID!, $groupId: String, $itemName: String!, $columnValues: JSON) {
  create_item(board_id: $boardId, group_id: $groupId, item_name: $itemName, column_values: $columnValues) {
    id
    name
  }
}
"""

# Column ids on the partner registration board
COLUMN_MAPPING = {
    "email": "email_mkn2x7rp",
    "phone": "phone_mkqh939s",
    "payment": "numbers_mkn22v3y",
    "remaining": "numeric_mkpn2c5s",
    "payment_method": "dropdown_mkn2ahpq",
    "subscription_date": "date_mkppab9c",
    "seller": "dropdown_mkn2my0r",
    "payment_completed": "color_mkn29vz2",
    "ready_to_add": "color_mkpnc0w4",
    "add_to_ds": "color_mkn26kav",
    "date": "date_mkn2z7rc",
    "note": "text_mkn2vgtv",
    "invited_by": "multiple_person_mky77mx7",
}

# Calling code -> ISO country, so the board shows the right flag
CALLING_CODE_TO_COUNTRY = {
    "1": "US", "7": "RU", "20": "EG", "27": "ZA", "30": "GR", "31": "NL",
    "32": "BE", "33": "FR", "34": "ES", "36": "HU", "39": "IT", "40": "RO",
    "41": "CH", "43": "AT", "44": "GB", "45": "DK", "46": "SE", "47": "NO",
    "48": "PL", "49": "DE", "51": "PE", "52": "MX", "53": "CU", "54": "AR",
    "55": "BR", "56": "CL", "57": "CO", "58": "VE", "60": "MY", "61": "AU",
    "62": "ID", "63": "PH", "64": "NZ", "65": "SG", "66": "TH", "81": "JP",
    "82": "KR", "84": "VN", "86": "CN", "90": "TR", "91": "IN", "92": "PK",
    "93": "AF", "94": "LK", "95": "MM", "98": "IR", "212": "MA", "213": "DZ",
    "216": "TN", "218": "LY", "220": "GM", "221": "SN", "234": "NG", "249": "SD",
    "254": "KE", "255": "TZ", "256": "UG", "260": "ZM", "263": "ZW", "351": "PT",
    "352": "LU", "353": "IE", "354": "IS", "355": "AL", "358": "FI", "359": "BG",
    "370": "LT", "371": "LV", "372": "EE", "380": "UA", "381": "RS", "385": "HR",
    "386": "SI", "420": "CZ", "421": "SK", "852": "HK", "853": "MO", "880": "BD",
    "886": "TW", "961": "LB", "962": "JO", "963": "SY", "964": "IQ", "965": "KW",
    "966": "SA", "967": "YE", "968": "OM", "970": "PS", "971": "AE", "972": "IL",
    "973": "BH", "974": "QA", "975": "BT", "976": "MN", "977": "NP", "992": "TJ",
    "993": "TM", "994": "AZ", "995": "GE", "996": "KG", "998": "UZ",
}


def country_from_phone(phone: str) -> str:
    """ISO country for an international number, longest calling code first."""
    digits = re.sub(r"[\s\-+]", "", phone)
    for length in (3, 2, 1):
        country = CALLING_CODE_TO_COUNTRY.get(digits[:length])
        if country:
            return country
    return ""


def build_column_values(
    *,
    email: str,
    phone: Optional[str],
    amount,
    transaction_id: str,
    created_at: datetime,
    invited_by_user_id: Optional[int] = None,
) -> Dict[str, Any]:
    date_str = created_at.date().isoformat()
    columns: Dict[str, Any] = {
        COLUMN_MAPPING["email"]: {"email": email, "text": email},
        COLUMN_MAPPING["payment"]: float(amount),
        COLUMN_MAPPING["remaining"]: 0,
        COLUMN_MAPPING["payment_method"]: {"labels": ["Mamo Pay"]},
        COLUMN_MAPPING["seller"]: {"labels": ["Mamo"]},
        COLUMN_MAPPING["subscription_date"]: {"date": date_str},
        COLUMN_MAPPING["date"]: {"date": date_str},
        COLUMN_MAPPING["note"]: transaction_id,
        COLUMN_MAPPING["payment_completed"]: {"label": "Done"},
        COLUMN_MAPPING["ready_to_add"]: {"label": "Done"},
        COLUMN_MAPPING["add_to_ds"]: {"label": "Done"},
    }
    # Gateway sends "-" when the buyer left the field empty
    if phone and phone != "-":
        columns[COLUMN_MAPPING["phone"]] = {
            "phone": phone,
            "countryShortName": country_from_phone(phone),
        }
    if invited_by_user_id:
        columns[COLUMN_MAPPING["invited_by"]] = {
            "personsAndTeams": [{"id": invited_by_user_id, "kind": "person"}],
        }
    return columns


class MondayCrmClient:
    """GraphQL client for the signup board."""

    def __init__(
        self,
        api_url: str,
        api_token: Optional[str],
        board_id: Optional[str],
        group_id: Optional[str] = None,
        invited_by_user_id: Optional[int] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_token = api_token
        self.board_id = board_id
        self.group_id = group_id
        self.invited_by_user_id = invited_by_user_id
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "MondayCrmClient":
        return cls(
            api_url=settings.MONDAY_API_URL,
            api_token=settings.MONDAY_API_TOKEN,
            board_id=settings.MONDAY_BOARD_ID,
            group_id=settings.MONDAY_GROUP_ID,
            invited_by_user_id=settings.MONDAY_INVITED_BY_USER_ID,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token and self.board_id)

    def register_signup(
        self,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        email: str,
        phone: Optional[str],
        transaction_id: str,
        amount,
        currency: str,
        is_new_user: bool,
        created_at: datetime,
    ) -> Optional[Dict[str, Any]]:
        """Create the board item. Returns {"id", "name"} or None."""
        if not self.is_configured:
            logger.info("[MONDAY] Integration not configured, skipping signup registration")
            return None

        item_name = f"{first_name or ''} {last_name or ''}".strip() or email
        column_values = build_column_values(
            email=email,
            phone=phone,
            amount=amount,
            transaction_id=transaction_id,
            created_at=created_at,
            invited_by_user_id=self.invited_by_user_id,
        )

        logger.info(
            f"[MONDAY] Registering {item_name} ({email}) for {transaction_id}: "
            f"{amount} {currency}, new_user={is_new_user}"
        )

        variables = {
            "boardId": str(self.board_id),
            "groupId": self.group_id,
            "itemName": item_name,
            "columnValues": json.dumps(column_values),
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.api_url,
                    json={"query": CREATE_ITEM_MUTATION, "variables": variables},
                    headers={
                        "Authorization": self.api_token,
                        "Content-Type": "application/json",
                        "API-Version": "2024-10",
                    },
                )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.error(f"[MONDAY] Failed to register {email}: {e}")
            return None
        except ValueError as e:
            logger.error(f"[MONDAY] Invalid JSON registering {email}: {e}")
            return None

        if body.get("errors"):
            messages = "; ".join(err.get("message", "unknown") for err in body["errors"])
            logger.error(f"[MONDAY] GraphQL errors registering {email}: {messages}")
            return None

        item = (body.get("data") or {}).get("create_item")
        if item:
            logger.info(f"[MONDAY] Created item {item.get('id')} for {email}")
        return item
