"""SMS copy.

Every template is a pure function of its inputs. The recovery set is closed:
the dispatcher picks one by index, so adding copy means adding a function to
RECOVERY_TEMPLATES, never formatting strings elsewhere.
"""

from typing import Callable, Tuple

BRAND = "Jersey Pickles"
STORE_URL = "jerseypickles.com"
OPT_OUT = "Reply STOP to opt-out"


def format_expiry(hours: float) -> str:
    """Human readable validity, e.g. 2 -> '2 hours', 0.5 -> '30 minutes'."""
    if hours < 1:
        minutes = int(round(hours * 60))
        return f"{minutes} minute" + ("" if minutes == 1 else "s")
    whole = int(hours) if float(hours).is_integer() else hours
    return f"{whole} hour" + ("" if whole == 1 else "s")


def recovery_nudge(code: str, percent: int, expires_in: str) -> str:
    return (
        f"\U0001F952 Hey Pickle Fan! We noticed you haven't used your discount yet... "
        f"Here's {percent}% OFF just for you! Use code {code} at {STORE_URL} "
        f"⏰ Expires in {expires_in}! {OPT_OUT}"
    )


def recovery_last_chance(code: str, percent: int, expires_in: str) -> str:
    return (
        f"{BRAND}: Last chance! {percent}% OFF everything with code {code}. "
        f"Only valid for {expires_in} at {STORE_URL} {OPT_OUT}"
    )


def recovery_jar_reserved(code: str, percent: int, expires_in: str) -> str:
    return (
        f"\U0001F952 {BRAND}: We saved a jar for you. Take {percent}% OFF with {code} "
        f"before it expires in {expires_in}. Shop {STORE_URL} {OPT_OUT}"
    )


RecoveryTemplate = Callable[[str, int, str], str]

RECOVERY_TEMPLATES: Tuple[RecoveryTemplate, ...] = (
    recovery_nudge,
    recovery_last_chance,
    recovery_jar_reserved,
)


def render_recovery(index: int, code: str, percent: int, expiration_hours: float) -> str:
    template = RECOVERY_TEMPLATES[index % len(RECOVERY_TEMPLATES)]
    return template(code, percent, format_expiry(expiration_hours))


def welcome(code: str, percent: int) -> str:
    return (
        f"\U0001F952 {BRAND}: Thanks for joining our VIP Text Club! Your exclusive code: "
        f"{code} for {percent}% OFF your order. Shop now: {STORE_URL} - {OPT_OUT}"
    )


def stop_confirmation() -> str:
    return f"{BRAND}: You have been unsubscribed and will no longer receive messages from us."


def help_response() -> str:
    return (
        f"{BRAND}: For help, contact support@jerseypickles.com. "
        f"Msg&data rates may apply. {OPT_OUT}."
    )
