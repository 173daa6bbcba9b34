from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from lrs.core.errors import ValidationError

_MAILTO = "mailto:"


@dataclass(frozen=True, slots=True)
class Actor:
    """The learner who performed a statement.

    Resolves to one identifier: a mailbox (``mailto:a@x.com``), a
    mailbox hash, or an account (``homePage`` + ``name``).  An actor
    with none of those is still a valid value; it just maps to the
    ``unknown`` partition.
    """

    mbox: str | None = None
    mbox_sha1sum: str | None = None
    account_home_page: str | None = None
    account_name: str | None = None
    name: str | None = None

    @staticmethod
    def from_dict(data: Mapping[str, Any] | str | None) -> Actor:
        """Build an Actor from an xAPI agent object (or its JSON text)."""
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                raise ValidationError("agent must be a JSON object") from None
        if not isinstance(data, Mapping):
            raise ValidationError("agent must be an object")

        account = data.get("account")
        if account is not None and not isinstance(account, Mapping):
            raise ValidationError("agent.account must be an object")
        account = account or {}

        return Actor(
            mbox=_str_or_none(data.get("mbox")),
            mbox_sha1sum=_str_or_none(data.get("mbox_sha1sum")),
            account_home_page=_str_or_none(account.get("homePage")),
            account_name=_str_or_none(account.get("name")),
            name=_str_or_none(data.get("name")),
        )

    @staticmethod
    def from_email(email: str, *, name: str | None = None) -> Actor:
        return Actor(mbox=f"{_MAILTO}{email}", name=name)

    @property
    def email(self) -> str | None:
        if not self.mbox:
            return None
        mbox = self.mbox
        if mbox.lower().startswith(_MAILTO):
            mbox = mbox[len(_MAILTO) :]
        return mbox.strip().lower() or None

    @property
    def local_part(self) -> str | None:
        """Mailbox local part, or the account name for account actors."""
        email = self.email
        if email:
            return email.split("@", 1)[0] or None
        if self.account_name:
            return self.account_name.strip().lower() or None
        return None

    @property
    def identifier(self) -> str | None:
        """Normalized identity used for partitioning and for progress rows."""
        email = self.email
        if email:
            return email
        if self.mbox_sha1sum:
            return self.mbox_sha1sum.strip().lower()
        if self.account_name:
            home_page = self.account_home_page or "account"
            return f"{home_page}|{self.account_name}".lower()
        return None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"objectType": "Agent"}
        if self.name:
            out["name"] = self.name
        if self.mbox:
            out["mbox"] = self.mbox
        if self.mbox_sha1sum:
            out["mbox_sha1sum"] = self.mbox_sha1sum
        if self.account_name:
            out["account"] = {
                "homePage": self.account_home_page or "",
                "name": self.account_name,
            }
        return out


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
