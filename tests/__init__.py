"""Test package for the session integrity components.

The component tests drive time through ``FakeClock`` and ``TimerQueue`` and
use in-memory doubles for the navigation, visibility and storage hosts. The
UI smoke tests run headlessly using pygame's dummy video driver. Run
``pytest`` from the project root.
"""
