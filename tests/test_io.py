from __future__ import annotations

import os

import numpy as np
import pytest
from astropy.io import fits
from astropy.table import Table
from astropy.wcs import WCS

import sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from catalog import build_catalog, write_result
from config import CatalogConfig
from errors import InputShapeError, WriterError
from io_bridge import NoiseModel, clump_path, expand_tiles, load_inputs, read_image
import make_catalog


def _write_inputs(tmp_path, n: int = 24):
    rng = np.random.default_rng(0)
    values = rng.normal(0.0, 0.2, size=(n, n)).astype(np.float32)
    objects = np.zeros((n, n), dtype=np.int32)
    clumps = np.zeros((n, n), dtype=np.int32)
    objects[4:10, 4:12] = 1
    objects[14:20, 6:12] = 2
    clumps[4:10, 4:7] = 1
    clumps[4:10, 7] = -1
    clumps[4:10, 8:12] = 2
    values[objects > 0] += 5.0

    w = WCS(naxis=2)
    w.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    w.wcs.crpix = [12.0, 12.0]
    w.wcs.crval = [10.0, -30.0]
    w.wcs.cdelt = [-0.2 / 3600, 0.2 / 3600]
    header = w.to_header()
    header["BUNIT"] = "nanomaggy"

    image = tmp_path / "image.fits"
    fits.HDUList([fits.PrimaryHDU(), fits.ImageHDU(values, header=header, name="VALUES")]
                 ).writeto(image)
    seg = tmp_path / "seg.fits"
    fits.HDUList([fits.PrimaryHDU(),
                  fits.ImageHDU(objects, name="OBJECTS"),
                  fits.ImageHDU(clumps, name="CLUMPS")]).writeto(seg)
    sky = tmp_path / "std.fits"
    fits.PrimaryHDU(np.full((4, 4), 0.2, dtype=np.float32)).writeto(sky)
    return image, seg, sky, values, objects, clumps


def test_read_image_and_inputs(tmp_path):
    image, seg, sky, values, objects, clumps = _write_inputs(tmp_path)
    data, header = read_image(str(image), "VALUES")
    assert data.dtype.isnative and np.allclose(data, values)
    assert header["CTYPE1"].startswith("RA")

    images = load_inputs({
        "values": {"path": str(image), "hdu": "VALUES"},
        "objects": {"path": str(seg), "hdu": "OBJECTS"},
        "clumps": {"path": str(seg), "hdu": "CLUMPS"},
        "std": str(sky),
    })
    assert images.values.dtype == np.float64
    assert np.array_equal(images.objects, objects)
    assert np.array_equal(images.clumps, clumps)
    assert images.sky == 0.0
    assert images.std.shape == (4, 4)
    assert images.unit == "nanomaggy"


def test_upper_limit_mask_input(tmp_path):
    image, seg, sky, *_ = _write_inputs(tmp_path)
    mask = np.zeros((24, 24), dtype=np.uint8)
    mask[:, :3] = 1
    path = tmp_path / "upmask.fits"
    fits.PrimaryHDU(mask).writeto(path)
    base = {"values": {"path": str(image), "hdu": "VALUES"},
            "objects": {"path": str(seg), "hdu": "OBJECTS"}, "std": str(sky)}
    assert load_inputs(base).upmask is None
    images = load_inputs(dict(base, upmask=str(path)))
    assert images.upmask.sum() == 72


def test_integer_images_use_blank(tmp_path):
    data = np.arange(16, dtype=np.int16).reshape(4, 4)
    hdu = fits.PrimaryHDU(data)
    hdu.header["BLANK"] = 5
    path = tmp_path / "int.fits"
    hdu.writeto(path)
    images = load_inputs({"values": str(path), "objects": str(path), "std": 1.0})
    assert np.isnan(images.values[1, 1])
    assert np.isfinite(images.values).sum() == 15


def test_missing_inputs_are_rejected(tmp_path):
    image, seg, *_ = _write_inputs(tmp_path)
    with pytest.raises(InputShapeError):
        load_inputs({"values": str(image)})
    with pytest.raises(InputShapeError):
        load_inputs({"values": {"path": str(image), "hdu": 1},
                     "objects": {"path": str(seg), "hdu": 1}})
    with pytest.raises(InputShapeError):
        read_image(str(image), 0)


def test_expand_tiles():
    assert expand_tiles(2.0, (4, 6), "sky").shape == (4, 6)
    tiles = np.array([[1.0, 2.0], [3.0, 4.0]])
    full = expand_tiles(tiles, (4, 6), "sky")
    assert full.shape == (4, 6)
    assert full[0, 0] == 1.0 and full[0, 5] == 2.0 and full[3, 0] == 3.0 and full[3, 5] == 4.0
    with pytest.raises(InputShapeError):
        expand_tiles(tiles, (5, 6), "sky")


def test_noise_model_variance():
    noise = NoiseModel(0.0, np.array([[1.0, 2.0]]), sky_already_subtracted=True)
    var = noise.variance_array((2, 4))
    assert var.tolist() == [[1.0, 1.0, 4.0, 4.0]] * 2
    assert noise.var_factor == 2.0
    as_var = NoiseModel(0.0, 9.0, std_is_variance=True)
    assert as_var.variance_array((1, 1))[0, 0] == 9.0 and as_var.var_factor == 1.0
    assert noise.median_std() == 1.5 and as_var.median_std() == 3.0
    assert np.isnan(NoiseModel(0.0, np.nan).median_std())


def test_write_result_tables(tmp_path):
    image, seg, sky, values, objects, clumps = _write_inputs(tmp_path)
    res = build_catalog(values, objects, ["OBJID", "AREA", "SUM", "X"], clumps=clumps,
                        std=0.2, config=CatalogConfig(threads=1, zeropoint=22.5),
                        values_unit="nanomaggy")
    out = tmp_path / "cat.fits"
    write_result(res, str(out))
    table = Table.read(out)
    assert table.colnames == ["OBJ_ID", "AREA", "SUM", "X"]
    assert table["AREA"].tolist() == [48, 36]
    assert str(table["SUM"].unit) == "nanomaggy"
    assert table.meta["ZEROPNT"] == 22.5
    clump_table = Table.read(clump_path(str(out)))
    assert clump_table.colnames == ["AREA", "SUM", "X"]
    assert len(clump_table) == 2


def test_clump_path():
    assert clump_path("out/cat.fits") == "out/cat_clumps.fits"
    assert clump_path("cat.txt") == "cat_clumps.txt"


def test_writer_errors_are_wrapped(tmp_path):
    res = build_catalog(np.ones((3, 3)), np.ones((3, 3), dtype=np.int32), ["AREA"],
                        config=CatalogConfig(threads=1))
    with pytest.raises(WriterError):
        write_result(res, str(tmp_path / "missing" / "cat.fits"))


def test_command_line_run(tmp_path, capsys):
    image, seg, sky, *_ = _write_inputs(tmp_path)
    out = tmp_path / "cli.fits"
    cfg = tmp_path / "run.yaml"
    cfg.write_text(
        "threads: 2\n"
        "zeropoint: 22.5\n"
        "columns: [OBJID, NUMCLUMPS, AREA, RA, DEC, MAGNITUDE, SN, RIVERMEAN]\n"
        "inputs:\n"
        f"  values: {{path: {image}, hdu: VALUES}}\n"
        f"  objects: {{path: {seg}, hdu: OBJECTS}}\n"
        f"  clumps: {{path: {seg}, hdu: CLUMPS}}\n"
        f"  std: {sky}\n"
        f"output: {out}\n"
    )
    make_catalog.main(["--config", str(cfg), "--log-level", "WARNING"])
    assert "objects=2 clumps=2" in capsys.readouterr().out

    table = Table.read(out)
    assert table.colnames == ["OBJ_ID", "NUM_CLUMPS", "AREA", "RA", "DEC", "MAGNITUDE", "SN"]
    assert table["NUM_CLUMPS"].tolist() == [2, 0]
    assert np.all(np.abs(table["DEC"] + 30.0) < 0.01)
    clump_table = Table.read(str(tmp_path / "cli_clumps.fits"))
    assert "RIVER_MEAN" in clump_table.colnames
