"""
Taste-profile vocabularies.

A submitted profile may only use these values. Genres and themes allow
between MIN_SELECTIONS and MAX_SELECTIONS entries each.
"""

MIN_SELECTIONS = 1
MAX_SELECTIONS = 5

VALID_GENRES = (
    "Action",
    "Adventure",
    "Comedy",
    "Drama",
    "Fantasy",
    "Horror",
    "Mystery",
    "Romance",
    "Sci-Fi",
    "Slice of Life",
    "Sports",
    "Supernatural",
    "Thriller",
    "Historical",
    "Psychological",
    "Mecha",
    "Isekai",
    "School Life",
    "Military",
    "Music",
)

VALID_THEMES = (
    "Friendship",
    "Love",
    "Betrayal",
    "Revenge",
    "Coming of Age",
    "Good vs Evil",
    "Sacrifice",
    "Redemption",
    "Power",
    "Family",
    "Honor",
    "Justice",
    "Freedom",
    "Survival",
    "Identity",
    "Destiny",
    "War",
    "Peace",
    "Magic",
    "Technology",
)

VALID_ART_STYLES = (
    "Traditional",
    "Modern",
    "Minimalist",
    "Detailed",
    "Cartoon",
    "Realistic",
    "Chibi",
    "Dark",
    "Colorful",
    "Black and White",
)

VALID_TARGET_AUDIENCES = ("Children", "Teens", "Young Adults", "Adults", "All Ages")

# G, PG, PG-13, R, NC-17
VALID_CONTENT_RATINGS = ("G", "PG", "PG-13", "R", "NC-17")
