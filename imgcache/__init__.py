from pathlib import Path

VERSION_FILE = Path(__file__).parent.resolve().with_name('VERSION')


def get_version() -> str:
  return VERSION_FILE.read_text().strip()


version = get_version()
