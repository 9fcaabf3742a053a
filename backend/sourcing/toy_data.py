"""
Курируемый список популярных игрушек: база для каталога до обогащения.
"""

import enum
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple


class ToyCategory(str, enum.Enum):
    ACTION_FIGURES = "action-figures"
    DOLLS = "dolls"
    BUILDING_BLOCKS = "building-blocks"
    VEHICLES = "vehicles"
    ARTS_CRAFTS = "arts-crafts"
    GAMES_PUZZLES = "games-puzzles"
    EDUCATIONAL = "educational"
    OUTDOOR = "outdoor"
    PLUSH = "plush"
    ELECTRONICS = "electronics"


class Gender(str, enum.Enum):
    BOY = "boy"
    GIRL = "girl"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class PopularToy:
    title: str
    brand: str
    category: ToyCategory
    price_range: Tuple[float, float]
    target_age: Tuple[int, int]
    gender: Gender
    popularity: int  # 1..100
    seasonal: bool
    keywords: Tuple[str, ...]

    @property
    def price_min(self) -> float:
        return self.price_range[0]

    @property
    def price_max(self) -> float:
        return self.price_range[1]


def _toy(title, brand, category, price, age, gender, popularity, keywords, seasonal=False) -> PopularToy:
    return PopularToy(
        title=title,
        brand=brand,
        category=ToyCategory(category),
        price_range=price,
        target_age=age,
        gender=Gender(gender),
        popularity=popularity,
        seasonal=seasonal,
        keywords=tuple(keywords),
    )


POPULAR_TOYS: Tuple[PopularToy, ...] = (
    # LEGO
    _toy("LEGO Creator 3-in-1 Deep Sea Creatures", "LEGO", "building-blocks", (15, 25), (7, 12), "neutral", 95,
         ["lego", "building", "ocean", "shark", "sea creatures", "3-in-1"]),
    _toy("LEGO Friends Heartlake City Shopping Mall", "LEGO", "building-blocks", (80, 120), (6, 12), "girl", 92,
         ["lego", "friends", "shopping", "mall", "heartlake", "building"]),
    _toy("LEGO Technic Monster Jam Grave Digger", "LEGO", "building-blocks", (25, 35), (8, 14), "neutral", 90,
         ["lego", "technic", "monster truck", "grave digger", "vehicles"]),
    # Фигурки и куклы
    _toy("Barbie Dreamhouse Adventures Dollhouse", "Mattel", "dolls", (150, 250), (3, 10), "girl", 98,
         ["barbie", "dreamhouse", "dollhouse", "pink", "accessories"], seasonal=True),
    _toy("Spider-Man Web Crawler Ultimate Action Figure", "Hasbro", "action-figures", (20, 35), (4, 12), "boy", 94,
         ["spiderman", "marvel", "action figure", "web crawler", "superhero"]),
    _toy("Transformers Rise of the Beasts Optimus Prime", "Hasbro", "action-figures", (30, 50), (6, 14), "boy", 88,
         ["transformers", "optimus prime", "robot", "vehicle", "action figure"]),
    # Электроника
    _toy("Nintendo Switch OLED Console", "Nintendo", "electronics", (300, 400), (6, 18), "neutral", 99,
         ["nintendo", "switch", "console", "gaming", "oled", "video games"], seasonal=True),
    _toy("VTech KidiZoom Creator Cam", "VTech", "electronics", (50, 80), (5, 12), "neutral", 85,
         ["camera", "kids", "video", "creator", "vtech", "photography"]),
    # Творчество
    _toy("Crayola Light-Up Tracing Pad", "Crayola", "arts-crafts", (15, 25), (4, 10), "neutral", 87,
         ["crayola", "drawing", "tracing", "art", "creative", "light up"]),
    _toy("Play-Doh Kitchen Creations Ultimate Ice Cream Truck", "Play-Doh", "arts-crafts", (25, 40), (3, 8),
         "neutral", 89, ["play-doh", "ice cream", "truck", "kitchen", "modeling", "creative"]),
    # Машинки
    _toy("Hot Wheels Monster Trucks Live Glow Party Playset", "Hot Wheels", "vehicles", (40, 60), (4, 12),
         "neutral", 91, ["hot wheels", "monster trucks", "cars", "glow", "track", "racing"]),
    _toy("Remote Control Stunt Car with LED Lights", "Various", "vehicles", (30, 80), (6, 14), "neutral", 86,
         ["rc car", "remote control", "stunt", "led lights", "racing", "outdoor"]),
    # Игры и пазлы
    _toy("Squishmallows Guess Who Game", "The Op", "games-puzzles", (15, 25), (5, 12), "neutral", 93,
         ["squishmallows", "guess who", "board game", "plush", "cute", "family"]),
    _toy("Ravensburger Disney 100th Anniversary Puzzle 1000pc", "Ravensburger", "games-puzzles", (15, 25),
         (8, 18), "neutral", 84, ["puzzle", "disney", "1000 pieces", "ravensburger", "family", "anniversary"]),
    # Мягкие игрушки
    _toy("Squishmallows 16-Inch Super Soft Plush - Cam the Cat", "Jazwares", "plush", (20, 35), (3, 16),
         "neutral", 96, ["squishmallows", "plush", "soft", "cat", "collectible", "stuffed animal"]),
    _toy("Pokémon Pikachu Interactive Electronic Plush", "Wicked Cool Toys", "plush", (30, 50), (4, 12),
         "neutral", 92, ["pokemon", "pikachu", "interactive", "electronic", "plush", "talking"]),
    # STEM
    _toy("National Geographic Mega Fossil Dig Kit", "National Geographic", "educational", (25, 40), (6, 12),
         "neutral", 88, ["fossil", "dig", "science", "educational", "archaeology", "discovery"]),
    _toy("Snap Circuits Jr. Electronics Discovery Kit", "Elenco", "educational", (20, 35), (8, 14), "neutral", 86,
         ["snap circuits", "electronics", "stem", "science", "building", "educational"]),
    # Улица
    _toy("Pogo Stick for Kids - Foam Handle", "Various", "outdoor", (25, 50), (5, 12), "neutral", 82,
         ["pogo stick", "outdoor", "exercise", "jumping", "active", "balance"]),
    _toy("Nerf Elite 2.0 Commander Blaster", "Nerf", "outdoor", (15, 30), (6, 14), "neutral", 90,
         ["nerf", "blaster", "dart", "outdoor", "battle", "foam"]),
)


def get_trending_toys(
    category: Optional[str] = None,
    gender: Optional[str] = None,
    age_range: Optional[Tuple[int, int]] = None,
    max_price: Optional[float] = None,
    toys: Tuple[PopularToy, ...] = POPULAR_TOYS,
) -> List[PopularToy]:
    out: List[PopularToy] = []
    for toy in toys:
        if category and toy.category.value != category:
            continue
        # Гендерный запрос принимает и нейтральные игрушки.
        if gender and toy.gender.value != gender and toy.gender is not Gender.NEUTRAL:
            continue
        if age_range:
            lo, hi = age_range
            if toy.target_age[1] < lo or toy.target_age[0] > hi:
                continue
        if max_price and toy.price_min > max_price:
            continue
        out.append(toy)
    return sorted(out, key=lambda t: t.popularity, reverse=True)


def search_popular_toys(query: str, limit: int = 20, toys: Tuple[PopularToy, ...] = POPULAR_TOYS) -> List[PopularToy]:
    terms = [t for t in re.split(r"\s+", (query or "").lower()) if t]
    if not terms:
        return []
    scored = []
    for toy in toys:
        text = f"{toy.title} {toy.brand} {' '.join(toy.keywords)}".lower()
        title = toy.title.lower()
        brand = toy.brand.lower()
        score = 0
        for term in terms:
            if term in text:
                score += 10
            if term in title:
                score += 20
            if term in brand:
                score += 15
        if score > 0:
            scored.append((score, toy))
    scored.sort(key=lambda x: (x[0], x[1].popularity), reverse=True)
    return [toy for _, toy in scored[: max(0, limit)]]
