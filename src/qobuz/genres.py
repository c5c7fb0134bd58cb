"""Localized catalog genre names and their canonical English tag values."""

GENRE_SEPARATOR = "→"

# Keys are lower-case; lookups are case-insensitive.
GENRE_TRANSLATIONS: dict[str, str] = {
    # French
    "musique": "Music",
    "électronique": "Electronic",
    "electronique": "Electronic",
    "musique électronique": "Electronic",
    "variété française": "French Pop",
    "chanson française": "French Chanson",
    "musique classique": "Classical",
    "classique": "Classical",
    "musique de chambre": "Chamber Music",
    "musique symphonique": "Symphonic Music",
    "musique vocale (profane et sacrée)": "Vocal Music",
    "opéra": "Opera",
    "bandes originales de films": "Soundtracks",
    "musiques de films": "Soundtracks",
    "musique de film": "Soundtracks",
    "musiques du monde": "World Music",
    "musique du monde": "World Music",
    "musique africaine": "African Music",
    "musique latine": "Latin",
    "enfants": "Children's Music",
    "musique pour enfants": "Children's Music",
    "humour": "Comedy",
    "chansons paillardes": "Comedy",
    "jazz vocal": "Vocal Jazz",
    "jazz contemporain": "Contemporary Jazz",
    "jazz traditionnel": "Traditional Jazz",
    "rap français": "French Rap",
    "pop/rock": "Pop/Rock",
    "rock alternatif et indé": "Alternative & Indie",
    "alternatif et indé": "Alternative & Indie",
    "métal": "Metal",
    "hard rock": "Hard Rock",
    "dance": "Dance",
    "lounge": "Lounge",
    "ambiance": "Ambient",
    "relaxation": "Relaxation",
    "musiques de noël": "Christmas Music",
    "noël": "Christmas Music",
    "gospel": "Gospel",
    "musique religieuse": "Religious Music",
    "chorale (choeur)": "Choral",
    "musique chorale (pour choeur)": "Choral",
    "récitals instrumentaux": "Instrumental Recitals",
    "concertos": "Concertos",
    "musique de scène": "Stage Music",
    "variété internationale": "International Pop",
    "reggae/dub": "Reggae",
    "soul/funk/r&b": "Soul/Funk/R&B",
    "livres audio": "Audiobooks",
    "littérature": "Literature",
    # German
    "elektronisch": "Electronic",
    "elektronische musik": "Electronic",
    "klassik": "Classical",
    "kammermusik": "Chamber Music",
    "sinfonische musik": "Symphonic Music",
    "oper": "Opera",
    "filmmusik": "Soundtracks",
    "weltmusik": "World Music",
    "kindermusik": "Children's Music",
    "weihnachtsmusik": "Christmas Music",
    "deutschsprachiger pop": "German Pop",
    "schlager": "Schlager",
    "volksmusik": "Folk",
    "geistliche musik": "Religious Music",
    "chormusik": "Choral",
    "hörbücher": "Audiobooks",
    # Spanish
    "electrónica": "Electronic",
    "música electrónica": "Electronic",
    "clásica": "Classical",
    "música clásica": "Classical",
    "música de cámara": "Chamber Music",
    "ópera": "Opera",
    "bandas sonoras": "Soundtracks",
    "músicas del mundo": "World Music",
    "música latina": "Latin",
    "música infantil": "Children's Music",
    "música navideña": "Christmas Music",
    "flamenco": "Flamenco",
    # Italian
    "elettronica": "Electronic",
    "musica elettronica": "Electronic",
    "classica": "Classical",
    "musica classica": "Classical",
    "musica da camera": "Chamber Music",
    "opera lirica": "Opera",
    "colonne sonore": "Soundtracks",
    "musica dal mondo": "World Music",
    "musica per bambini": "Children's Music",
    "musica italiana": "Italian Pop",
    "cantautori": "Singer-Songwriter",
    # Portuguese
    "eletrônica": "Electronic",
    "música clássica": "Classical",
    "clássica": "Classical",
    "trilhas sonoras": "Soundtracks",
    "música do mundo": "World Music",
    "música brasileira": "Brazilian Music",
    "música infantil brasileira": "Children's Music",
}


def translate_genre(path: list | str | None) -> str:
    """Translate the most specific segment of a genre path to English.

    Accepts a list of path entries (strings or ``{"name": ...}`` dicts) or a
    single ``"A→B→C"`` string. Unknown names pass through unchanged.
    """
    if not path:
        return ""
    last = path[-1] if isinstance(path, list) else path
    if isinstance(last, dict):
        last = last.get("name") or ""
    name = str(last).split(GENRE_SEPARATOR)[-1].strip()
    return GENRE_TRANSLATIONS.get(name.lower(), name)
