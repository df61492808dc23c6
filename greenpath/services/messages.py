import random
from typing import Optional

MESSAGES = {
    "high_comfort": [
        "Excellent choice! This route will keep you much cooler.",
        "Great decision! Your body will thank you on this shaded path.",
        "Smart pick! More trees mean a more comfortable journey.",
    ],
    "medium_comfort": [
        "Good choice! A bit more distance for better comfort.",
        "Nice! Trading a few extra meters for shade is worth it.",
    ],
    "low_distance": [
        "Perfect balance of comfort and efficiency!",
        "Best of both worlds - cool and quick!",
    ],
    "environmental": [
        "Choosing green routes helps preserve urban forests!",
        "Every shaded route choice supports sustainable cities.",
    ],
}


def message_pool(comfort_improvement: float, distance_penalty: float) -> str:
    if comfort_improvement > 15 and distance_penalty < 20:
        return "low_distance"
    if comfort_improvement > 10:
        return "high_comfort"
    if comfort_improvement > 5:
        return "medium_comfort"
    return "environmental"


def pick_encouraging_message(
    comfort_improvement: float,
    distance_penalty: float,
    cool_route_selected: bool,
    rng: random.Random | None = None,
) -> Optional[dict]:
    """Cheer the user on for picking the cool route; nothing for the fast one."""
    if not cool_route_selected:
        return None
    pool = message_pool(comfort_improvement, distance_penalty)
    text = (rng or random).choice(MESSAGES[pool])
    return {
        "text": text,
        "category": pool,
        "comfortImprovement": round(comfort_improvement, 1),
        "distancePenalty": round(distance_penalty, 1) if distance_penalty > 0 else None,
    }
