"""
Outing leaderboard ranking.

Builds tie-aware standings across every group of a live multi-group outing.
Nothing here is persisted; standings are recomputed from the per-player
progress records each time the view is rendered.
"""

from typing import Dict, Iterable, List, Mapping, Optional

from lowman.models.schemas import OutingLeaderboardEntry, OutingProgress
from lowman.utils.constants import DEFAULT_COURSE_PAR, NOT_STARTED_POSITION


def format_score_to_par(score_to_par: int) -> str:
    """E for even, +n over, -n under."""
    if score_to_par == 0:
        return "E"
    if score_to_par > 0:
        return f"+{score_to_par}"
    return str(score_to_par)


def is_stableford(format_id: Optional[str]) -> bool:
    return bool(format_id) and "stableford" in format_id


def _to_entry(progress: OutingProgress, course_par: int, position) -> OutingLeaderboardEntry:
    return OutingLeaderboardEntry(
        player_id=progress.player_id,
        group_id=progress.group_id,
        display_name=progress.display_name,
        gross_score=progress.gross_score,
        net_score=progress.net_score,
        score_to_par=format_score_to_par(progress.net_score - course_par),
        thru=progress.thru,
        format_score=progress.format_score,
        position=position,
    )


def rank(
    entries: Iterable[OutingProgress],
    course_par: int = DEFAULT_COURSE_PAR,
    format_id: str = "stroke_play",
) -> List[OutingLeaderboardEntry]:
    """
    Rank outing players with standard competition ranking.

    Players who have not started (thru == 0) are not ranked and get the "-"
    placeholder after everyone who has. Tied scores share a position and the
    next distinct score skips past them (1, 1, 3).

    Stroke play ranks by net ascending, with gross only ordering the display
    of tied players. Stableford formats rank by points descending.

    Args:
        entries: Progress records for every player in the outing
        course_par: Par used for the score-to-par display
        format_id: Scoring format identifier

    Returns:
        Ranked entries followed by not-started entries
    """
    entries = list(entries)
    started = [e for e in entries if e.thru > 0]
    not_started = [e for e in entries if e.thru == 0]

    stableford = is_stableford(format_id)

    def score_of(progress: OutingProgress) -> int:
        return (progress.format_score or 0) if stableford else progress.net_score

    if stableford:
        started.sort(key=lambda e: -score_of(e))
    else:
        started.sort(key=lambda e: (e.net_score, e.gross_score))

    ranked: List[OutingLeaderboardEntry] = []
    position = 0
    previous_score = None
    for index, progress in enumerate(started):
        score = score_of(progress)
        if index == 0 or score != previous_score:
            position = index + 1
        previous_score = score
        ranked.append(_to_entry(progress, course_par, position))

    ranked.extend(_to_entry(p, course_par, NOT_STARTED_POSITION) for p in not_started)
    return ranked


def build_outing_leaderboard(
    groups: Iterable[Mapping],
    live_scores: Mapping[str, Mapping[str, Mapping]],
    course_par: int = DEFAULT_COURSE_PAR,
    format_id: str = "stroke_play",
    display_names: Optional[Mapping[str, str]] = None,
) -> List[OutingLeaderboardEntry]:
    """
    Flatten per-group live rounds into progress records and rank them.

    Args:
        groups: Groups with ``group_id``, ``round_id`` and ``player_ids``;
            groups without a round yet are skipped
        live_scores: ``{round_id: {player_id: {current_gross, current_net,
            thru, stableford_points}}}``
        course_par: Par used for the score-to-par display
        format_id: Scoring format identifier
        display_names: Optional ``{player_id: name}``

    Returns:
        Ranked outing leaderboard
    """
    display_names = display_names or {}
    progress: List[OutingProgress] = []
    for group in groups:
        round_id = group.get("round_id")
        if not round_id:
            continue
        round_scores: Dict = live_scores.get(round_id) or {}
        for player_id in group.get("player_ids", []):
            scores = round_scores.get(player_id)
            if not scores:
                continue
            progress.append(OutingProgress(
                player_id=player_id,
                group_id=group.get("group_id"),
                display_name=display_names.get(player_id),
                gross_score=scores.get("current_gross", 0),
                net_score=scores.get("current_net", 0),
                thru=scores.get("thru", 0),
                format_score=scores.get("stableford_points"),
            ))
    return rank(progress, course_par=course_par, format_id=format_id)
