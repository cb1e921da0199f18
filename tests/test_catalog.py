import pytest

from passbase.catalog import DEFAULT_CATALOG_PATH, load_catalog_file, parse_catalog


def test_bundled_catalog_loads_in_order():
    passes = load_catalog_file(DEFAULT_CATALOG_PATH)
    assert passes[0].id == "alpe-dhuez"
    assert passes[1].id == "mont-ventoux"
    assert len({p.id for p in passes}) == len(passes)


def test_catalog_file_from_yaml(tmp_path):
    path = tmp_path / "passes.yaml"
    path.write_text(
        "passes:\n"
        "  - id: stelvio-pass\n"
        "    name: Stelvio Pass\n"
        "    lat: 46.5286\n"
        "    lng: 10.4531\n"
        "    max_altitude_m: 2757\n"
    )
    [stelvio] = load_catalog_file(path)
    assert stelvio.name == "Stelvio Pass"
    assert stelvio.max_altitude_m == 2757


def test_missing_catalog_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_catalog_file(tmp_path / "nope.yaml")


@pytest.mark.parametrize("entries", [
    [{"name": "No id", "lat": 1, "lng": 1}],
    [{"id": "a", "lat": 1, "lng": 1}, {"id": "a", "lat": 2, "lng": 2}],
    [{"id": "a", "lat": 91, "lng": 1}],
])
def test_invalid_catalogs(entries):
    with pytest.raises(ValueError):
        parse_catalog({"passes": entries})
