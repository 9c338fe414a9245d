"""
Built-in alias tables.

Keys are lowercase abbreviations or common aliases, values are the official
names every other component joins on. Operator corrections go into the
user-override table instead of editing these.
"""

NBA_TEAMS = {
    "atl": "Atlanta Hawks",
    "bos": "Boston Celtics",
    "bkn": "Brooklyn Nets",
    "cha": "Charlotte Hornets",
    "chi": "Chicago Bulls",
    "cle": "Cleveland Cavaliers",
    "cavs": "Cleveland Cavaliers",
    "dal": "Dallas Mavericks",
    "mavs": "Dallas Mavericks",
    "den": "Denver Nuggets",
    "det": "Detroit Pistons",
    "gsw": "Golden State Warriors",
    "golden state": "Golden State Warriors",
    "hou": "Houston Rockets",
    "ind": "Indiana Pacers",
    "lac": "Los Angeles Clippers",
    "la clippers": "Los Angeles Clippers",
    "lal": "Los Angeles Lakers",
    "la lakers": "Los Angeles Lakers",
    "mem": "Memphis Grizzlies",
    "mia": "Miami Heat",
    "mil": "Milwaukee Bucks",
    "min": "Minnesota Timberwolves",
    "wolves": "Minnesota Timberwolves",
    "nop": "New Orleans Pelicans",
    "nyk": "New York Knicks",
    "okc": "Oklahoma City Thunder",
    "orl": "Orlando Magic",
    "phi": "Philadelphia 76ers",
    "sixers": "Philadelphia 76ers",
    "phx": "Phoenix Suns",
    "por": "Portland Trail Blazers",
    "sac": "Sacramento Kings",
    "sas": "San Antonio Spurs",
    "tor": "Toronto Raptors",
    "uta": "Utah Jazz",
    "was": "Washington Wizards",
}

NHL_TEAMS = {
    "ana": "Anaheim Ducks",
    "bos": "Boston Bruins",
    "buf": "Buffalo Sabres",
    "cgy": "Calgary Flames",
    "car": "Carolina Hurricanes",
    "canes": "Carolina Hurricanes",
    "chi": "Chicago Blackhawks",
    "col": "Colorado Avalanche",
    "avs": "Colorado Avalanche",
    "cbj": "Columbus Blue Jackets",
    "dal": "Dallas Stars",
    "det": "Detroit Red Wings",
    "edm": "Edmonton Oilers",
    "fla": "Florida Panthers",
    "lak": "Los Angeles Kings",
    "min": "Minnesota Wild",
    "mtl": "Montreal Canadiens",
    "habs": "Montreal Canadiens",
    "nsh": "Nashville Predators",
    "njd": "New Jersey Devils",
    "nyi": "New York Islanders",
    "nyr": "New York Rangers",
    "ott": "Ottawa Senators",
    "phi": "Philadelphia Flyers",
    "pit": "Pittsburgh Penguins",
    "sjs": "San Jose Sharks",
    "sea": "Seattle Kraken",
    "stl": "St Louis Blues",
    "st. louis blues": "St Louis Blues",
    "tbl": "Tampa Bay Lightning",
    "tor": "Toronto Maple Leafs",
    "uta": "Utah Hockey Club",
    "van": "Vancouver Canucks",
    "vgk": "Vegas Golden Knights",
    "wsh": "Washington Capitals",
    "caps": "Washington Capitals",
    "wpg": "Winnipeg Jets",
}

NFL_TEAMS = {
    "ari": "Arizona Cardinals",
    "atl": "Atlanta Falcons",
    "bal": "Baltimore Ravens",
    "buf": "Buffalo Bills",
    "car": "Carolina Panthers",
    "chi": "Chicago Bears",
    "cin": "Cincinnati Bengals",
    "cle": "Cleveland Browns",
    "dal": "Dallas Cowboys",
    "den": "Denver Broncos",
    "det": "Detroit Lions",
    "gb": "Green Bay Packers",
    "hou": "Houston Texans",
    "ind": "Indianapolis Colts",
    "jax": "Jacksonville Jaguars",
    "kc": "Kansas City Chiefs",
    "lv": "Las Vegas Raiders",
    "lac": "Los Angeles Chargers",
    "lar": "Los Angeles Rams",
    "mia": "Miami Dolphins",
    "min": "Minnesota Vikings",
    "ne": "New England Patriots",
    "no": "New Orleans Saints",
    "nyg": "New York Giants",
    "nyj": "New York Jets",
    "phi": "Philadelphia Eagles",
    "pit": "Pittsburgh Steelers",
    "sf": "San Francisco 49ers",
    "niners": "San Francisco 49ers",
    "sea": "Seattle Seahawks",
    "tb": "Tampa Bay Buccaneers",
    "bucs": "Tampa Bay Buccaneers",
    "ten": "Tennessee Titans",
    "was": "Washington Commanders",
}

EPL_TEAMS = {
    "ars": "Arsenal",
    "avl": "Aston Villa",
    "villa": "Aston Villa",
    "bou": "Bournemouth",
    "bre": "Brentford",
    "bha": "Brighton and Hove Albion",
    "brighton": "Brighton and Hove Albion",
    "che": "Chelsea",
    "cry": "Crystal Palace",
    "eve": "Everton",
    "ful": "Fulham",
    "liv": "Liverpool",
    "mci": "Manchester City",
    "man city": "Manchester City",
    "mun": "Manchester United",
    "man utd": "Manchester United",
    "man united": "Manchester United",
    "new": "Newcastle United",
    "newcastle": "Newcastle United",
    "nfo": "Nottingham Forest",
    "forest": "Nottingham Forest",
    "tot": "Tottenham Hotspur",
    "spurs": "Tottenham Hotspur",
    "whu": "West Ham United",
    "west ham": "West Ham United",
    "wol": "Wolverhampton Wanderers",
    "wolves": "Wolverhampton Wanderers",
}

ALIAS_TABLES: dict[str, dict[str, str]] = {
    "basketball_nba": NBA_TEAMS,
    "icehockey_nhl": NHL_TEAMS,
    "americanfootball_nfl": NFL_TEAMS,
    "soccer_epl": EPL_TEAMS,
}
