from importlib import resources


def load_navigation_script() -> str:
    with resources.files(__package__).joinpath("data/navigation.js").open("r", encoding="utf-8") as fh:
        return fh.read()
