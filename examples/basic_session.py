#!/usr/bin/env python3
"""
Basic Session Example
=====================

This example demonstrates how a SurfAI session navigates a dynamic
page, waits for it to settle, finds elements without selectors and
acts on them.

Goal: Add a todo item to a TodoMVC application.

Usage:
    python examples/basic_session.py
"""

from surfai import Action, Session, SessionConfig, SurfaiError


def main():
    """Run a basic smart-navigation session."""

    print("=" * 60)
    print("🏄 SurfAI - Basic Session Example")
    print("=" * 60)
    print()

    # - headless: Show the browser so we can watch
    # - settle_confirmations: Quiet polls required before a page counts as settled
    # - retry: Up to 3 attempts per action, re-resolving the element each time
    config = SessionConfig(headless=False, settle_confirmations=2)
    session = Session(config).open()

    try:
        url = "https://demo.playwright.dev/todomvc/"
        print(f"Navigating to: {url}")
        result = session.navigate_smart(url)
        print(f"Verdict: {result.verdict.value} ({result.reason}) in {result.duration_ms:.0f}ms")
        print()

        # Show what was discovered
        print("Elements found:")
        for i, element in enumerate(session.get_elements(), 1):
            confidence_icon = "🟢" if element.confidence > 0.7 else "🟡" if element.confidence > 0.4 else "🔴"
            print(f"  {i}. {confidence_icon} {element.role.value}: {element.label[:50]}")
        # Draw the same numbers over the page itself
        highlights = session.highlight_elements()
        print(f"Highlighted {len(highlights)} elements on the page")
        print()

        # Type into the new-todo box and watch for re-renders
        todo_box = session.find_by_role("text_input")[0]
        with session.subscribe_changes() as changes:
            typed = session.act(todo_box.descriptor_id, Action.type("Buy milk"))
            print(f"✅ Typed after {typed.attempts} attempt(s), verified={typed.verified}")

            change = changes.get(timeout=3.0)
            if change is not None:
                print(f"DOM changed: {change}")

        print()
        print("Flight record:")
        for entry in session.recorder.failures():
            print(f"  ⚠️ {entry.message}")

    except SurfaiError as e:
        print(f"Error during session: {e}")
        raise

    finally:
        # Always clean up
        print()
        print("Closing browser...")
        session.close()
        print("Done!")


if __name__ == "__main__":
    main()
