import pandas as pd
import pytest


BILLBOARD_CSV = (
    "year,artist,track,time,date.entered,wk1,wk2,wk3\n"
    "2000,2 Pac,Baby Dont Cry,4:22,2000-02-26,87,82,72\n"
    "2000,2Ge+her,The Hardest Part Of Breaking Up,3:15,2000-09-02,91,87,92\n"
    "2000,3 Doors Down,Kryptonite,3:53,2000-04-08,81,70,68\n"
    "2000,Aaliyah,I Dont Wanna,4:15,2000-01-29,84,62,\n"
)


@pytest.fixture
def billboard_csv():
    return BILLBOARD_CSV.encode("utf-8")


@pytest.fixture
def billboard():
    return pd.DataFrame(
        {
            "year": [2000, 2000, 2000, 2000],
            "artist": ["2 Pac", "2Ge+her", "3 Doors Down", "Aaliyah"],
            "track": ["Baby Dont Cry", "The Hardest Part Of Breaking Up", "Kryptonite", "I Dont Wanna"],
            "time": ["4:22", "3:15", "3:53", "4:15"],
            "date.entered": ["2000-02-26", "2000-09-02", "2000-04-08", "2000-01-29"],
            "wk1": [87, 91, 81, 84],
            "wk2": [82, 87, 70, 62],
            "wk3": [72, 92, 68, None],
        }
    )


@pytest.fixture
def small_wide():
    # Two songs by one artist; the second charted for a single week.
    return pd.DataFrame(
        {
            "artist": ["A", "A"],
            "track": ["T", "T2"],
            "week1": [5, 7],
            "week2": [3, None],
        }
    )
