"""Shared helpers for building music-map pages in tests."""

from typing import Iterable, Tuple

import pytest


def make_map_page(links: Iterable[Tuple[str, str]]) -> str:
    anchors = "\n".join(
        f'<a href="{name}" class="S" id="{link_id}">{name}</a>' for name, link_id in links
    )
    return (
        "<html><head><title>Music-Map</title></head><body>"
        f'<div id="gnodMap">\n{anchors}\n</div>'
        "</body></html>"
    )


@pytest.fixture
def map_page():
    return make_map_page
