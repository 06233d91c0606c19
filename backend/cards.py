from __future__ import annotations

import random
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from models import Card, Player, Suit, TablePair, Trump

SUITS: List[Suit] = ["♠", "♥", "♦", "♣"]
RANKS = [6, 7, 8, 9, 10, 11, 12, 13, 14]

RANK_STRENGTH = {rank: idx for idx, rank in enumerate(RANKS)}


def make_deck() -> List[Card]:
    return [Card(rank=rank, suit=suit) for suit in SUITS for rank in RANKS]


def new_shuffled_deck(rng: Optional[random.Random] = None) -> List[Card]:
    deck = make_deck()
    (rng or random).shuffle(deck)
    return deck


def select_trump(deck: Sequence[Card], rng: Optional[random.Random] = None) -> Tuple[Trump, List[Card]]:
    """Pick a random card, move it to the bottom of the deck and make its suit trump."""
    if not deck:
        raise ValueError("Cannot pick a trump from an empty deck")
    idx = (rng or random).randrange(len(deck))
    card = deck[idx]
    rest = list(deck[:idx]) + list(deck[idx + 1:])
    rest.append(card)
    return Trump(card=card, suit=card.suit), rest


def ranks_on_table(table: Iterable[TablePair]) -> Set[int]:
    return {card.rank for pair in table for card in pair.cards()}


def is_legal_attack(card: Card, table: Sequence[TablePair]) -> bool:
    if not table:
        return True
    return card.rank in ranks_on_table(table)


def is_legal_defense(defense: Card, attack: Card, trump_suit: Suit) -> bool:
    if defense.suit == attack.suit:
        return RANK_STRENGTH[defense.rank] > RANK_STRENGTH[attack.rank]
    return defense.suit == trump_suit and attack.suit != trump_suit


def card_strength(card: Card, trump_suit: Optional[Suit] = None) -> Tuple[int, int]:
    return (1 if card.suit == trump_suit else 0, RANK_STRENGTH[card.rank])


def lowest_trump_holder(players: Iterable[Player], trump_suit: Suit) -> Optional[str]:
    """Id of the player with the lowest trump; on a tie the first scanned player keeps it."""
    lowest: Optional[Card] = None
    holder: Optional[str] = None
    for player in players:
        trumps = [card for card in player.hand if card.suit == trump_suit]
        if not trumps:
            continue
        candidate = min(trumps, key=lambda c: RANK_STRENGTH[c.rank])
        if lowest is None or RANK_STRENGTH[candidate.rank] < RANK_STRENGTH[lowest.rank]:
            lowest = candidate
            holder = player.player_id
    return holder
