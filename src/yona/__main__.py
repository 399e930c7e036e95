from yona.main import yona

if __name__ == "__main__":  # pragma: no cover
    yona()
