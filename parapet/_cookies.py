"""Cookie string helpers shared by the DataDome and PerimeterX flows."""

from parapet._errors import MalformedCookie

DATADOME_COOKIE_NAME = "datadome"

# The collector endpoint answers with
#   {"cookie": "datadome=<128 chars>; Max-Age=31536000; Domain=...; ..."}
# Everything after the fixed-length name=value prefix is the attribute
# template the origin issued. The offset must stay exactly this value.
DATADOME_COOKIE_LENGTH = 128
_TEMPLATE_OFFSET = len(f"{DATADOME_COOKIE_NAME}=") + DATADOME_COOKIE_LENGTH


def split_cookie(raw: str) -> tuple[str, str]:
    """Split a solver ``name=value`` string.

    Only the first ``=`` separates; base64 padding in the value survives.
    Raises MalformedCookie when either side is empty.
    """
    name, sep, value = (raw or "").partition("=")
    name = name.strip()
    value = value.strip()
    if not sep or not name or not value:
        raise MalformedCookie(raw)
    return name, value


def cookie_template(captured: str) -> str:
    """Attribute tail of a collector cookie string (``; Max-Age=...``)."""
    return captured[_TEMPLATE_OFFSET:]


def compose_cookie(solved: str, captured: str) -> str:
    """Graft a solver ``name=value`` onto a captured cookie's attributes.

    >>> compose_cookie("datadome=NEW", "datadome=" + "x" * 128 + "; Path=/")
    'datadome=NEW; Path=/'
    """
    return f"{solved}{cookie_template(captured)}"


def find_cookie(cookies: list[dict], name: str) -> dict | None:
    """First cookie dict named *name* from ``context.cookies()`` output."""
    for c in cookies:
        if c.get("name") == name:
            return c
    return None
