"""
Game constants for Busfahrer.

This module is the single source of truth for table sizes, round bounds and
the statistic keys reported to the achievement subsystem.

Layouts:
    Pyramid (phase 1): rows of 1..5 cards, 15 total, row r revealed in round r.
    Diamond (phase 3): rows of 2,2,3,4,5,4,3,2,2 cards, 27 total.
        Index 0 ("first") and 26 ("last") are dealt face up.
"""

# =============================================================================
# Deck
# =============================================================================

DECK_COPIES = 2
MIN_NUMBER = 2
MAX_NUMBER = 14  # Ace

JACK = 11
QUEEN = 12
KING = 13
ACE = 14

HAND_SIZE = 10
MAX_SPECTATORS = 50

# =============================================================================
# Layouts
# =============================================================================

PYRAMID_ROWS: tuple[int, ...] = (1, 2, 3, 4, 5)
PYRAMID_SIZE = sum(PYRAMID_ROWS)

DIAMOND_ROWS: tuple[int, ...] = (2, 2, 3, 4, 5, 4, 3, 2, 2)
DIAMOND_SIZE = sum(DIAMOND_ROWS)
DIAMOND_FIRST = 0
DIAMOND_LAST = DIAMOND_SIZE - 1

# =============================================================================
# Round bounds
# =============================================================================

# Round 6 of phase 1 is the terminal "phase 2 may start" round
PHASE1_ROUNDS = 6
# Round 4 of phase 2 is the terminal "phase 3 may start" round
PHASE2_ROUNDS = 4
# Phase 3 counts down from here, one per correct guess
PHASE3_ROUNDS = len(DIAMOND_ROWS)
PHASE3_FAILED = -1

# =============================================================================
# Statistic keys (consumed by the external achievement subsystem)
# =============================================================================

GAMES_PLAYED = "gamesPlayed"
GAMES_WON = "gamesWon"
GAMES_BUSFAHRER = "gamesBusfahrer"
GAMES_HOSTED = "gamesHosted"
GAMES_JOINED = "gamesJoined"
GAMES_LEFT = "gamesLeft"
PLAYERS_KICKED = "playersKicked"
GOT_KICKED = "gotKicked"
DRINKS_GIVEN = "drinksGiven"
DRINKS_SELF = "drinksSelf"
MAX_DRINKS_GIVEN = "maxDrinksGiven"
MAX_DRINKS_SELF = "maxDrinksSelf"
NUMBER_EX = "numberEx"
LAYED_CARDS = "layedCards"
ROWS_FLIPPED = "rowsFlipped"
CARDS_LEFT = "cardsLeft"
MAX_CARDS_SELF = "maxCardsSelf"
CARDS_PLAYED_PHASE1 = "cardsPlayedPhase1"
PHASE3_FAILED_KEY = "phase3Failed"
DRINKS_PHASE3 = "drinksPhase3"
MAX_ROUNDS = "maxRounds"
