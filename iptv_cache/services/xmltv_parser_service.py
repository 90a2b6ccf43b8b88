from datetime import datetime
from io import BytesIO
from typing import Callable, Optional
import logging

from lxml import etree # type: ignore

from iptv_cache.errors import ParseError
from iptv_cache.services.fetch_types import IconPayload, ParseStats, ProgramPayload
from iptv_cache.utils.ids import normalize_id
from iptv_cache.utils.timezone import parse_xmltv_time

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled"

FieldStrategy = Callable[[etree._Element], Optional[str]]


def _element_text(element: etree._Element) -> Optional[str]:
    """<title>News</title>, including text split around nested tags"""
    text = "".join(element.itertext()).strip()
    return text or None


def _text_attribute(element: etree._Element) -> Optional[str]:
    """<title text="News"/>"""
    value = element.get("text")
    return value.strip() if value and value.strip() else None


FIELD_STRATEGIES: tuple[FieldStrategy, ...] = (_element_text, _text_attribute)


def parse_xmltv_payload(
    content: bytes,
    time_from: Optional[datetime] = None,
    time_to: Optional[datetime] = None,
    id_suffix: Optional[str] = None,
) -> tuple[list[IconPayload], list[ProgramPayload], ParseStats]:
    """
    Parse an XMLTV document and return channel icons and programs

    Elements are cleared as soon as they are consumed so the document tree
    never grows beyond a single <programme>.

    Args:
        content: Decompressed XMLTV bytes
        time_from: Drop programs that stopped before this instant
        time_to: Drop programs that start after this instant
        id_suffix: Configured channel id suffix, stripped from every id

    Returns:
        Tuple of (icons, programs, stats); channel ids are normalized

    Raises:
        ParseError: If the document is malformed or its root is not <tv>
    """
    if not content or not content.strip():
        raise ParseError("Empty XMLTV payload")

    icons: dict[str, IconPayload] = {}
    programs: list[ProgramPayload] = []
    stats = ParseStats()

    context = etree.iterparse(
        BytesIO(content),
        events=("start", "end"),
        huge_tree=True,
        resolve_entities=False,
        no_network=True,
    )

    root = None
    depth = 0
    try:
        for event, element in context:
            if event == "start":
                depth += 1
                if root is None:
                    root = element
                    if etree.QName(root).localname != "tv":
                        raise ParseError(f"Invalid XMLTV structure: root element is <{root.tag}>")
                continue

            depth -= 1
            if depth != 1:
                continue

            if element.tag == "channel":
                stats.channels_seen += 1
                icon = _parse_channel_icon(element, id_suffix)
                if icon:
                    icons[icon.channel_id] = icon
            elif element.tag == "programme":
                stats.programs_seen += 1
                program = _parse_single_program(element, time_from, time_to, stats, id_suffix)
                if program:
                    programs.append(program)

            element.clear()
            while element.getprevious() is not None:
                del root[0]
    except etree.XMLSyntaxError as e:
        logger.error(f"  XML parsing error: {e}")
        raise ParseError(f"Malformed XMLTV document: {e}") from e

    if root is None:
        raise ParseError("XMLTV document has no root element")

    logger.debug(
        "XMLTV parsing complete: %s channels, %s icons, %s/%s programs kept",
        stats.channels_seen,
        len(icons),
        len(programs),
        stats.programs_seen,
    )

    return list(icons.values()), programs, stats


def _parse_channel_icon(channel: etree._Element, id_suffix: Optional[str] = None) -> Optional[IconPayload]:
    """Extract the icon of a <channel> element, keyed by normalized id"""
    channel_id = normalize_id(channel.get("id"), id_suffix, remove_suffix=True)
    icon_elem = channel.find("icon")
    icon_url = icon_elem.get("src") if icon_elem is not None else None

    if not channel_id or not icon_url:
        return None
    return IconPayload(channel_id=channel_id, icon_url=icon_url.strip())


def _parse_single_program(
    programme: etree._Element,
    time_from: Optional[datetime],
    time_to: Optional[datetime],
    stats: ParseStats,
    id_suffix: Optional[str] = None,
) -> Optional[ProgramPayload]:
    """Parse single programme element"""
    channel_id = normalize_id(programme.get("channel"), id_suffix, remove_suffix=True)
    start_time = parse_xmltv_time(programme.get("start"))
    stop_time = parse_xmltv_time(programme.get("stop"))

    if not channel_id or start_time is None or stop_time is None or start_time >= stop_time:
        stats.skipped_invalid += 1
        return None

    if time_from and stop_time < time_from:
        stats.skipped_old += 1
        return None

    if time_to and start_time > time_to:
        stats.skipped_future += 1
        return None

    return ProgramPayload(
        channel_id=channel_id,
        start_time=start_time,
        stop_time=stop_time,
        title=extract_field(programme, "title", DEFAULT_TITLE),
        description=extract_field(programme, "desc", ""),
        category=extract_field(programme, "category", ""),
    )


def extract_field(
    element: etree._Element,
    tag: str,
    default: str,
    strategies: tuple[FieldStrategy, ...] = FIELD_STRATEGIES,
) -> str:
    """Return the first non-empty value any strategy finds in the first <tag> child"""
    child = element.find(tag)
    if child is None:
        return default

    for strategy in strategies:
        value = strategy(child)
        if value:
            return value
    return default
