# mediatrack/aggregation.py
"""
Pure grouping of recommendation lists into the shape the recommendation
pages render. Nothing here talks to the backend or raises.
"""
from dataclasses import dataclass, field, replace, asdict
from typing import Dict, Iterable, List, Optional

from mediatrack.media import MOVIES_TV, display_status
from mediatrack.models import FriendSummary, QuickStats, Recommendation

@dataclass
class RecommendationsView:
    hits: List[Recommendation] = field(default_factory=list)
    misses: List[Recommendation] = field(default_factory=list)
    sent: List[Recommendation] = field(default_factory=list)
    queue: List[Recommendation] = field(default_factory=list)
    friend_recommendations: Dict[str, List[Recommendation]] = field(default_factory=dict)
    friends_with_recs: List[FriendSummary] = field(default_factory=list)
    quick_stats: QuickStats = field(default_factory=QuickStats)
    user_name_map: Dict[str, str] = field(default_factory=dict)

    def to_dict(self):
        return asdict(self)

@dataclass
class FriendGroup:
    user_id: str
    display_name: str
    recommendations: List[Recommendation] = field(default_factory=list)

def build_name_map(friends: Iterable[FriendSummary], hits: Iterable[Recommendation],
                   misses: Iterable[Recommendation], pending: Iterable[Recommendation],
                   sent: Iterable[Recommendation]) -> Dict[str, str]:
    """
    user_id -> display name from every list on the page.
    Sources are applied in order (friends, hits, misses, pending, sent) and
    a later source overwrites an earlier one for the same id.
    """
    names: Dict[str, str] = {}
    for f in friends:
        if f.user_id and f.display_name:
            names[f.user_id] = f.display_name
    for source in (hits, misses, pending):
        for rec in source:
            if rec.from_user_id and rec.sender_name:
                names[rec.from_user_id] = rec.sender_name
    for rec in sent:
        if rec.to_user_id and rec.recipient_name:
            names[rec.to_user_id] = rec.recipient_name
    return names

def group_by_sender(pending: Iterable[Recommendation]) -> Dict[str, List[Recommendation]]:
    grouped: Dict[str, List[Recommendation]] = {}
    for rec in pending:
        grouped.setdefault(rec.from_user_id, []).append(rec)
    return grouped

def exclude_self(friends: Iterable[FriendSummary], user_id: Optional[str]) -> List[FriendSummary]:
    friends = list(friends)
    if not user_id:
        return friends
    return [f for f in friends if f.user_id != user_id]

def summarize_friends(received: Iterable[Recommendation],
                      names: Optional[Dict[str, str]] = None) -> List[FriendSummary]:
    """One FriendSummary per sender, in order of first appearance."""
    names = names or {}
    out: Dict[str, FriendSummary] = {}
    for rec in received:
        s = out.get(rec.from_user_id)
        if s is None:
            display = rec.sender_name or names.get(rec.from_user_id) or "Unknown User"
            s = out[rec.from_user_id] = FriendSummary(user_id=rec.from_user_id, display_name=display)
        s.total_count += 1
        if rec.status == "pending":
            s.pending_count += 1
        elif rec.status == "hit":
            s.hit_count += 1
        elif rec.status == "miss":
            s.miss_count += 1
    return list(out.values())

def quick_stats(received: Iterable[Recommendation], sent: Iterable[Recommendation]) -> QuickStats:
    stats = QuickStats()
    for rec in received:
        if rec.status == "hit":
            stats.hits += 1
        elif rec.status == "miss":
            stats.misses += 1
        elif rec.status == "pending":
            stats.queue += 1
    stats.sent = sum(1 for _ in sent)
    return stats

def shape_recommendations(records: Iterable[Recommendation], status: str,
                          media_kind: str = MOVIES_TV) -> List[Recommendation]:
    # "sent" keeps each record's own status, with consumed aliases collapsed
    if status == "sent":
        return [replace(r, status=display_status(media_kind, r.status)) for r in records]
    return [replace(r, status=status) for r in records]

def build_recommendations_view(user_id: Optional[str], friends: Iterable[FriendSummary],
                               hits: Iterable[Recommendation], misses: Iterable[Recommendation],
                               pending: Iterable[Recommendation], sent: Iterable[Recommendation],
                               stats: Optional[QuickStats] = None,
                               media_kind: str = MOVIES_TV) -> RecommendationsView:
    friends, hits, misses = list(friends), list(hits), list(misses)
    pending, sent = list(pending), list(sent)
    queue = shape_recommendations(pending, "pending", media_kind)
    return RecommendationsView(
        hits=shape_recommendations(hits, "hit", media_kind),
        misses=shape_recommendations(misses, "miss", media_kind),
        sent=shape_recommendations(sent, "sent", media_kind),
        queue=queue,
        friend_recommendations=group_by_sender(queue),
        friends_with_recs=exclude_self(friends, user_id),
        quick_stats=stats or QuickStats(),
        user_name_map=build_name_map(friends, hits, misses, pending, sent),
    )

def group_pending_by_friend(pending: Iterable[Recommendation],
                            names: Dict[str, str]) -> List[FriendGroup]:
    """Pending recommendations per sender, senders with the most first."""
    groups = [FriendGroup(user_id=uid, display_name=names.get(uid) or "Unknown User", recommendations=recs)
              for uid, recs in group_by_sender(pending).items()]
    groups.sort(key=lambda g: len(g.recommendations), reverse=True)
    return groups
