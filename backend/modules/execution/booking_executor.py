"""
modules/execution/booking_executor.py
---------------------------------------
Best-effort automated booking, one itinerary item at a time.

Per item:
  guards       no URL → no_source_url, booking not required → skipped
  open         timeout → timeout, other failure → page_error
  snapshot     sold out / waitlist / captcha / login wall → early exit
  trigger      click the first matching booking control, bump the quantity
               stepper to the party size
  checkout     up to BOOKING_MAX_CHECKOUT_STEPS rounds of
               confirm-check → stuck-check → fill profile → click proceed
  capture      screenshot + page text → confirmation detector

`success` is reported only when the detector finds an explicit
confirmation; clicking through without one is `failed`. The browser is
closed on every path, and exceptions never escape `book()`.
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
import time
from typing import Awaitable, Callable, Optional, Sequence

import config
from modules.execution.browser import BrowserCapability, get_browser
from modules.execution.confirmation import DetectorRegistry, extract_domain
from schemas.booking import BookingActionType, BookingResult, BookingStatus, UserProfile
from schemas.event import Event

logger = logging.getLogger(__name__)

# (domain, source) → whether site-specific booking instructions exist
ManualLookup = Callable[[Optional[str], str], bool]
ProgressHook = Callable[[int, Event, Optional[BookingResult]], Awaitable[None]]

DEFAULT_PHONE = "+6500000000"

# ── Snapshot signals ─────────────────────────────────────────────────────────

_SOLD_OUT = ("sold out", "sold_out", "no tickets available")
_WAITLIST = ("join waitlist", "join the waitlist", "waitlist only", "add to waitlist")
_CAPTCHA = ("captcha", "recaptcha", "hcaptcha")
_LOGIN_HINT = ("sign in", "log in", "login")
_LOGIN_WALL = ("must sign in", "please log in", "login required")
_PAYMENT = ("card number", "payment details", "credit card")

# Priority order: specific labels before generic ones
BOOKING_LABELS = (
    "reserve a spot", "get tickets", "register", "book now", "book",
    "rsvp", "reserve", "sign up", "join", "attend",
)
PROCEED_LABELS = (
    "complete order", "place order", "complete registration", "register",
    "checkout", "confirm", "submit", "complete",
)
SUBMIT_SELECTORS = (
    'button[type="submit"]',
    'input[type="submit"]',
    'button[data-testid="submit-button"]',
    'button[data-testid="register-button"]',
)

# Finds and clicks a quantity "+" control in the document or a same-origin iframe.
INCREMENT_QUANTITY_JS = """(() => {
  function findInc(doc) {
    var btn = doc.querySelector('button[aria-label*="Increase"]')
      || doc.querySelector('button[aria-label*="increase"]')
      || doc.querySelector('button[aria-label*="Add"]');
    if (btn) return btn;
    var btns = Array.from(doc.querySelectorAll('button'));
    for (var i = 0; i < btns.length; i++) {
      var t = (btns[i].textContent || '').trim();
      if (t === '+' || t === '\\uFF0B') return btns[i];
    }
    return doc.querySelector('[data-testid*="increase"]')
      || doc.querySelector('[data-testid*="increment"]')
      || doc.querySelector('[data-testid*="plus"]');
  }
  var el = findInc(document);
  if (el) { el.click(); return 'clicked_main'; }
  var frames = Array.from(document.querySelectorAll('iframe'));
  for (var i = 0; i < frames.length; i++) {
    try { el = findInc(frames[i].contentDocument); if (el) { el.click(); return 'clicked_iframe'; } } catch (e) {}
  }
  return 'not_found';
})()"""

# JSON list of labels for required inputs that are still empty.
EMPTY_REQUIRED_FIELDS_JS = """(() => {
  var problems = [];
  var docs = [document];
  Array.from(document.querySelectorAll('iframe')).forEach(function (f) {
    try { if (f.contentDocument) docs.push(f.contentDocument); } catch (e) {}
  });
  docs.forEach(function (doc) {
    doc.querySelectorAll('input[required], select[required], textarea[required]').forEach(function (inp) {
      if (inp.value && inp.value.trim() !== '') return;
      var label = '';
      if (inp.id) {
        var lbl = doc.querySelector('label[for="' + inp.id + '"]');
        if (lbl) label = lbl.textContent.trim();
      }
      if (!label) {
        var parent = inp.closest('label, .form-group, .field');
        if (parent) label = parent.textContent.trim().substring(0, 60);
      }
      problems.push(label || inp.name || inp.id || 'unknown');
    });
  });
  return JSON.stringify(problems);
})()"""


def _contains_any(text: str, needles: Sequence[str]) -> bool:
    return any(n in text for n in needles)


def _parse_list(raw: str) -> list[str]:
    try:
        value = json.loads(raw)
        if isinstance(value, str):
            value = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


class BookingExecutor:
    """
    Drives one browser session per bookable item.

    `settle_s` scales every wait between page actions; tests pass 0.
    `browser_factory` is called once per attempt so sessions never leak
    between items.
    """

    def __init__(
        self,
        browser_factory: Callable[[], BrowserCapability] = get_browser,
        manual_lookup: Optional[ManualLookup] = None,
        detectors: Optional[DetectorRegistry] = None,
        max_checkout_steps: int = config.BOOKING_MAX_CHECKOUT_STEPS,
        settle_s: float = config.BOOKING_SETTLE_S,
        screenshot_dir: str = config.SCREENSHOT_DIR,
    ):
        self.browser_factory = browser_factory
        self.manual_lookup = manual_lookup
        self.detectors = detectors or DetectorRegistry()
        self.max_checkout_steps = max_checkout_steps
        self.settle_s = settle_s
        self.screenshot_dir = screenshot_dir

    # ── Public ────────────────────────────────────────────────────────────────

    async def execute_all(
        self,
        events: Sequence[Event],
        party_size: int,
        profile: UserProfile,
        on_progress: Optional[ProgressHook] = None,
    ) -> list[BookingResult]:
        """Book each event in order. Never concurrent; one failure never stops the rest."""
        results: list[BookingResult] = []
        for i, event in enumerate(events):
            if on_progress is not None:
                await on_progress(i, event, None)
            result = await self.book(event, party_size, profile)
            results.append(result)
            if on_progress is not None:
                await on_progress(i, event, result)
        return results

    async def book(self, event: Event, party_size: int, profile: UserProfile) -> BookingResult:
        if not event.source_url or not event.source_url.strip():
            logger.info("[booking] no source URL for %r — info only", event.name)
            return self._result(
                event, BookingStatus.NO_SOURCE_URL, BookingActionType.INFO_ONLY,
                error="No booking URL available — this is a generated/suggested activity",
            )
        if not event.booking_required:
            logger.info("[booking] booking not required for %r — skipping", event.name)
            return self._result(event, BookingStatus.SKIPPED, BookingActionType.INFO_ONLY)

        browser = self.browser_factory()
        try:
            return await self._attempt(browser, event, party_size, profile)
        except Exception as exc:
            logger.exception("[booking] error booking %r", event.name)
            return self._result(event, BookingStatus.FAILED, error=str(exc) or "Unknown booking error")
        finally:
            try:
                await browser.close()
            except Exception as exc:
                logger.warning("[booking] browser close failed: %s", exc)

    # ── State machine ─────────────────────────────────────────────────────────

    async def _attempt(
        self,
        browser: BrowserCapability,
        event: Event,
        party_size: int,
        profile: UserProfile,
    ) -> BookingResult:
        url = event.source_url or ""
        domain = extract_domain(url)
        has_manual = bool(self.manual_lookup and self.manual_lookup(domain, event.source))
        logger.info("[booking] action manual %s for %s",
                    "found" if has_manual else "not found", domain or event.source)

        opened = await browser.open(url)
        if not opened.success:
            if opened.timed_out:
                return self._result(event, BookingStatus.TIMEOUT,
                                    error=f"Timed out opening booking page: {opened.error}")
            return self._result(event, BookingStatus.PAGE_ERROR,
                                error=f"Failed to open browser: {opened.error}")
        await self._pause(1.0)

        snap = await browser.snapshot()
        early = self._early_exit(event, (snap.output if snap.success else "").lower())
        if early is not None:
            return early

        clicked = await browser.click_text(BOOKING_LABELS)
        if clicked.success:
            logger.info("[booking] clicked booking control %r", clicked.output)
            await self._pause(1.0)
            if party_size > 1:
                await self._set_quantity(browser, party_size)
        elif not has_manual:
            return self._result(
                event, BookingStatus.NO_ACTION_MANUAL, BookingActionType.INFO_ONLY,
                error="No booking button found and no action manual available",
            )

        detector = self.detectors.for_url(url)
        outcome = await self._checkout(browser, event, profile, detector)
        if outcome is not None:
            return outcome

        await self._pause(1.5)
        shot = os.path.join(self.screenshot_dir, f"booking-{event.id}-{int(time.time() * 1000)}.png")
        shot_result = await browser.screenshot(shot)
        page = await browser.text()
        confirmation = detector.confirmation_number(page.output if page.success else "")

        if confirmation:
            logger.info("[booking] confirmed %r (%s)", event.name, confirmation)
            return self._result(event, BookingStatus.SUCCESS, confirmation_number=confirmation,
                                screenshot_path=shot if shot_result.success else None)
        logger.warning("[booking] no confirmation detected for %r — marking failed", event.name)
        return self._result(event, BookingStatus.FAILED,
                            screenshot_path=shot if shot_result.success else None,
                            error="No booking confirmation detected")

    def _early_exit(self, event: Event, snapshot: str) -> Optional[BookingResult]:
        if _contains_any(snapshot, _SOLD_OUT):
            return self._result(event, BookingStatus.SOLD_OUT, error="Event is sold out")
        if _contains_any(snapshot, _WAITLIST):
            return self._result(event, BookingStatus.WAITLIST,
                                error="Event is at capacity — only waitlist available")
        if _contains_any(snapshot, _CAPTCHA):
            return self._result(event, BookingStatus.CAPTCHA_BLOCKED,
                                error="Captcha detected — cannot proceed with automated booking")
        if _contains_any(snapshot, _LOGIN_HINT) and _contains_any(snapshot, _LOGIN_WALL):
            return self._result(event, BookingStatus.LOGIN_REQUIRED,
                                error="Login required to book this event")
        return None

    async def _set_quantity(self, browser: BrowserCapability, party_size: int) -> None:
        for n in range(party_size - 1):
            res = await browser.eval(INCREMENT_QUANTITY_JS)
            if not (res.success and "clicked" in res.output):
                logger.info("[booking] no quantity stepper on attempt %d — using default quantity", n + 1)
                break
            await self._pause(0.15)
        await self._pause(0.25)

    async def _checkout(self, browser, event, profile, detector) -> Optional[BookingResult]:
        """
        Run the bounded checkout loop. Returns a terminal result only for
        payment and custom-field walls; otherwise None and the caller
        decides from the final page.
        """
        previous = ""
        stuck = 0
        empty_required: list[str] = []

        for step in range(self.max_checkout_steps):
            await self._pause(1.5 if step == 0 else 1.25)

            page = await browser.text()
            current = page.output if page.success else ""
            if detector.is_confirmed(current):
                logger.info("[booking] confirmation detected at step %d", step + 1)
                return None
            if _contains_any(current.lower(), _PAYMENT):
                return self._result(event, BookingStatus.PAYMENT_REQUIRED,
                                    error="Checkout requires payment details")

            if previous and current == previous:
                stuck += 1
                logger.info("[booking] step %d: page unchanged (stuck %d)", step + 1, stuck)
                if stuck >= 2:
                    break
            else:
                stuck = 0
            previous = current

            if step >= 2:
                scan = await browser.eval(EMPTY_REQUIRED_FIELDS_JS)
                empty_required = _parse_list(scan.output) if scan.success else []
                if empty_required:
                    logger.info("[booking] step %d: %d unfilled required fields: %s",
                                step + 1, len(empty_required), ", ".join(empty_required))

            filled = await self._fill_profile(browser, profile)
            if filled:
                await self._pause(0.25)

            proceeded = (await browser.click(SUBMIT_SELECTORS)).success
            if not proceeded:
                proceeded = (await browser.click_text(PROCEED_LABELS)).success

            if not filled and not proceeded:
                logger.info("[booking] step %d: nothing to fill or click — stopping", step + 1)
                break

        if empty_required:
            page = await browser.text()
            if not detector.is_confirmed(page.output if page.success else ""):
                return self._result(
                    event, BookingStatus.CUSTOM_FIELDS_REQUIRED,
                    error="Required fields could not be filled: " + ", ".join(empty_required),
                )
        return None

    async def _fill_profile(self, browser: BrowserCapability, profile: UserProfile) -> bool:
        first, last = profile.first_name, profile.last_name
        selector_map: list[tuple[tuple[str, ...], str]] = [
            (('input[name="buyer.N-first_name"]', 'input[name$="N-first_name"]'), first),
            (('input[name="buyer.N-last_name"]', 'input[name$="N-last_name"]'), last),
            (('input[name="buyer.N-email"]', 'input[name$="N-email"]'), profile.email),
            (('input[name="buyer.confirmEmailAddress"]', 'input[name$="confirmEmailAddress"]'), profile.email),
            (('input[name="name"]', 'input[name="full_name"]', 'input[name="first_name"]', "#name"), profile.name),
            (('input[name="email"]', 'input[type="email"]:not([name*="confirm"])'), profile.email),
            (('input[name="phone"]', 'input[type="tel"]', "#phone"), profile.phone or ""),
        ]
        any_filled = False
        for selectors, value in selector_map:
            if value and (await browser.fill(selectors, value)).success:
                any_filled = True

        phone = profile.phone or DEFAULT_PHONE
        label_map = [
            ("phone", phone), ("tel", phone), ("telephone", phone), ("mobile", phone),
            ("contact number", phone),
            ("first name", first), ("last name", last),
            ("email", profile.email), ("name", profile.name),
        ]
        if profile.dietary_preferences:
            label_map.append(("dietary", ", ".join(profile.dietary_preferences)))
        if profile.special_requests:
            label_map.append(("special request", profile.special_requests))
        by_label = await browser.fill_by_label(label_map)
        return any_filled or (by_label.success and by_label.output not in ("", "0"))

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _pause(self, factor: float) -> None:
        if self.settle_s > 0:
            await asyncio.sleep(self.settle_s * factor)

    @staticmethod
    def _result(
        event: Event,
        status: BookingStatus,
        action: BookingActionType = BookingActionType.BOOK,
        **kwargs,
    ) -> BookingResult:
        return BookingResult(
            event_id=event.id,
            event_name=event.name,
            action_type=action,
            status=status,
            **kwargs,
        )
