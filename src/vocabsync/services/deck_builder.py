"""Balanced flashcard deck selection."""
import math
import random
from datetime import datetime
from typing import List, Mapping

from vocabsync.models.records import DeckCard, FlashcardProgress, WordLookupRecord


def build_balanced_deck(
    word_history: Mapping[str, WordLookupRecord],
    progress: Mapping[str, FlashcardProgress],
    now: datetime,
    deck_size: int = 20,
    new_ratio: float = 0.6,
    rng: random.Random = random,
) -> List[DeckCard]:
    """Pick a shuffled deck of unseen and due words.

    Words never reviewed are "new"; reviewed words whose next review is not in
    the future are "due". About ``new_ratio`` of the deck is new words and the
    rest due words; when one side runs short the other fills the gap. Words
    that are neither new nor due are left out.
    """
    new_cards: List[DeckCard] = []
    due_cards: List[DeckCard] = []

    for word, record in word_history.items():
        if record.lookup_count < 1:
            continue
        card = DeckCard(word=word, context=record.latest_context)
        word_progress = progress.get(word)
        if word_progress is None:
            new_cards.append(card)
        elif word_progress.next_review <= now:
            due_cards.append(card)

    rng.shuffle(new_cards)
    rng.shuffle(due_cards)

    new_ratio = min(1.0, max(0.0, new_ratio))
    target_new = math.ceil(deck_size * new_ratio)
    target_due = deck_size - target_new

    selected_new = new_cards[:target_new]
    selected_due = due_cards[:target_due]

    remaining = deck_size - len(selected_new) - len(selected_due)
    if remaining > 0:
        if len(selected_new) < target_new:
            selected_due.extend(due_cards[len(selected_due):len(selected_due) + remaining])
        else:
            selected_new.extend(new_cards[len(selected_new):len(selected_new) + remaining])

    deck = selected_new + selected_due
    rng.shuffle(deck)
    return deck
