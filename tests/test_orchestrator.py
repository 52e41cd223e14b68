import os

import numpy as np
import pytest
from PIL import Image

from photo_host.config import DEFAULT_MODEL_NAME
from photo_host.errors import (
  DownloadError, InputError, InvalidImageError, InvalidScaleError, ModelUnavailableError,
  NotImplementedMethodError, PersistenceError,
)
from photo_host.model_cache import ModelCache
from photo_host.orchestrator import TransformOrchestrator, TransformRequest, validate_scale
from photo_host.sessions import SessionManager

from conftest import BASE_URL, FakeRuntime, constant_mask, make_zip


def _request(operation, **args):
  return TransformRequest.from_args(operation, args)


def _open(path):
  with Image.open(path) as im:
    im.load()
    return im.copy()


class TestRequestValidation:
  @pytest.mark.parametrize("raw", [2, 3, 4, 2.0, 4.0])
  def test_valid_scales(self, raw):
    assert validate_scale(raw) == int(raw)

  @pytest.mark.parametrize("raw", [1, 5, 0, -2, 2.5, "2", None, True])
  def test_invalid_scales(self, raw):
    with pytest.raises(InvalidScaleError) as exc:
      validate_scale(raw)
    assert exc.value.code == "INVALID_SCALE"

  def test_scale_rejected_before_any_io(self, tmp_path):
    # The image does not exist; the scale check must fire first.
    with pytest.raises(InvalidScaleError):
      _request("upscale", imagePath=str(tmp_path / "missing.png"), scale=5)

  def test_missing_image_path(self):
    with pytest.raises(InputError) as exc:
      _request("autoEnhance")
    assert exc.value.code == "INVALID_ARGUMENT"

  def test_unknown_operation(self):
    with pytest.raises(NotImplementedMethodError):
      _request("colorize", imagePath="x.png")

  def test_inpaint_accepts_either_key(self):
    a = _request("inpaint", imagePath="a.png", maskPath="m.png")
    b = _request("inpaint", inputImagePath="a.png", maskImagePath="m.png")
    assert (a.image_path, a.mask_path) == (b.image_path, b.mask_path)

  def test_inpaint_requires_mask(self):
    with pytest.raises(InputError):
      _request("inpaint", imagePath="a.png")

  def test_adjustments_are_clamped(self):
    req = _request("applyAdjustments", imagePath="a.png", adjustments={"brightness": 3, "blur": -1})
    assert req.adjustments["brightness"] == 1.0
    assert req.adjustments["blur"] == 0.0

  def test_unknown_adjustment(self):
    with pytest.raises(InputError):
      _request("applyAdjustments", imagePath="a.png", adjustments={"hue": 0.1})


class TestUpscale:
  def test_x4_runs_two_model_passes(self, orchestrator, runtimes, install_model, make_image, output_dir):
    install_model("realesrgan_x2")
    out = orchestrator.run(_request("upscale", imagePath=make_image(size=(100, 100)), scale=4))
    assert os.path.dirname(out) == output_dir
    assert os.path.basename(out).startswith("upscaled_x4_")
    assert _open(out).size == (400, 400)
    rt = runtimes["realesrgan_x2.onnx"]
    assert rt.runs == 2
    assert rt.seen_shapes == [(1, 3, 100, 100), (1, 3, 200, 200)]

  def test_x2_non_square_uses_bucket(self, orchestrator, runtimes, install_model, make_image):
    install_model("realesrgan_x2")
    out = orchestrator.run(_request("upscale", imagePath=make_image(size=(300, 200)), scale=2))
    assert _open(out).size == (600, 400)
    assert runtimes["realesrgan_x2.onnx"].seen_shapes == [(1, 3, 256, 256)]

  def test_x3_uses_filter(self, orchestrator, runtimes, install_model, make_image):
    install_model("realesrgan_x2")
    out = orchestrator.run(_request("upscale", imagePath=make_image(size=(30, 20)), scale=3))
    assert _open(out).size == (90, 60)
    assert runtimes["realesrgan_x2.onnx"].loads == 0

  def test_falls_back_without_model(self, orchestrator, offline, make_image):
    out = orchestrator.run(_request("upscale", imagePath=make_image(size=(40, 30)), scale=2))
    assert _open(out).size == (80, 60)

  def test_falls_back_when_inference_fails(self, orchestrator, runtimes, install_model, make_image):
    install_model("realesrgan_x2")
    runtimes["realesrgan_x2.onnx"].fail_run = True
    out = orchestrator.run(_request("upscale", imagePath=make_image(size=(40, 30)), scale=4))
    assert _open(out).size == (160, 120)

  def test_keeps_alpha(self, orchestrator, install_model, make_image):
    install_model("realesrgan_x2")
    path = make_image("clear.png", size=(16, 16), color=(10, 20, 30, 0), mode="RGBA")
    out = _open(orchestrator.run(_request("upscale", imagePath=path, scale=2)))
    assert out.mode == "RGBA"
    assert np.all(np.asarray(out.getchannel("A")) == 0)

  @pytest.mark.parametrize("operation,args", [
    ("upscale", {"scale": 2}),
    ("autoEnhance", {}),
    ("portraitMode", {}),
  ])
  def test_keeps_palette_transparency(self, orchestrator, install_model, tmp_path, operation, args):
    install_model("realesrgan_x2")
    path = str(tmp_path / "palette.png")
    img = Image.new("P", (16, 16), 0)
    img.putpalette([10, 20, 30] + [0, 0, 0] * 255)
    img.save(path, transparency=0)
    out = _open(orchestrator.run(_request(operation, imagePath=path, **args)))
    assert out.mode == "RGBA"
    assert np.all(np.asarray(out.getchannel("A")) == 0)

  def test_falls_back_when_cache_dir_is_unusable(self, bundled_dir, runtimes, cfg, output_dir, http, make_image, tmp_path):
    blocker = tmp_path / "models-is-a-file"
    blocker.write_text("")
    cache = ModelCache(str(blocker), bundled_dir, cfg=cfg)
    sessions = SessionManager(cache, cfg=cfg, runtime_factory=lambda path, _cfg: runtimes["realesrgan_x2.onnx"])
    orch = TransformOrchestrator(cache, sessions, cfg=cfg, output_dir=output_dir)
    out = orch.run(_request("upscale", imagePath=make_image(size=(20, 20)), scale=2))
    assert _open(out).size == (40, 40)
    with pytest.raises(DownloadError) as exc:
      orch.run(_request("removeBackground", imagePath=make_image(size=(20, 20))))
    assert exc.value.code == "MODEL_DOWNLOAD_ERROR"

  def test_invalid_image(self, orchestrator, tmp_path):
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"garbage")
    with pytest.raises(InvalidImageError):
      orchestrator.run(_request("upscale", imagePath=str(bad), scale=2))


class TestRemoveBackground:
  def test_full_mask(self, orchestrator, install_model, make_image, runtimes):
    install_model("modnet")
    out = _open(orchestrator.run(_request("removeBackground", imagePath=make_image(size=(120, 80)))))
    assert out.mode == "RGBA"
    assert out.size == (120, 80)
    assert np.all(np.asarray(out.getchannel("A")) == 255)
    assert runtimes["modnet.onnx"].seen_shapes == [(1, 3, 512, 512)]

  def test_empty_mask(self, orchestrator, install_model, make_image, runtimes):
    install_model("modnet")
    runtimes["modnet.onnx"].fn = constant_mask(0.0)
    out = _open(orchestrator.run(_request("removeBackground", imagePath=make_image(size=(64, 64)))))
    assert np.all(np.asarray(out.getchannel("A")) == 0)

  def test_no_network_no_output(self, orchestrator, offline, make_image, output_dir):
    with pytest.raises(DownloadError) as exc:
      orchestrator.run(_request("removeBackground", imagePath=make_image()))
    assert exc.value.code == "MODEL_DOWNLOAD_ERROR"
    assert not os.path.exists(output_dir)

  def test_downloads_on_first_use(self, orchestrator, http, make_image, progress):
    http.serve(f"{BASE_URL}/modnet.zip", make_zip({"modnet.onnx": b"w" * 64}))
    events = []
    progress.subscribe(events.append)
    out = orchestrator.run(_request("removeBackground", imagePath=make_image(size=(32, 32))))
    assert os.path.isfile(out)
    assert events[-1].progress == 1.0


class TestSameSizeOperations:
  @pytest.mark.parametrize("operation", ["autoEnhance", "reduceNoise"])
  def test_model_path_keeps_size(self, orchestrator, install_model, make_image, operation):
    install_model("realesrgan_x2")
    out = orchestrator.run(_request(operation, imagePath=make_image(size=(90, 60))))
    assert _open(out).size == (90, 60)

  @pytest.mark.parametrize("operation", ["autoEnhance", "reduceNoise"])
  def test_fallback_keeps_size(self, orchestrator, offline, make_image, operation):
    out = orchestrator.run(_request(operation, imagePath=make_image(size=(90, 60))))
    assert _open(out).size == (90, 60)

  def test_portrait(self, orchestrator, make_image):
    out = orchestrator.run(_request("portraitMode", imagePath=make_image(size=(50, 70))))
    assert _open(out).size == (50, 70)

  def test_filter(self, orchestrator, make_image):
    out = orchestrator.run(_request("applyFilter", imagePath=make_image(size=(20, 20)), filterName="grayscale"))
    r, g, b = _open(out).convert("RGB").split()
    assert np.array_equal(np.asarray(r), np.asarray(g))
    assert os.path.basename(out).startswith("filtered_")

  def test_unknown_filter(self, orchestrator, make_image):
    with pytest.raises(InputError):
      orchestrator.run(_request("applyFilter", imagePath=make_image(), filterName="glitter"))

  def test_adjustments(self, orchestrator, make_image):
    req = _request("applyAdjustments", imagePath=make_image(size=(20, 10)), adjustments={"brightness": 0.3})
    assert _open(orchestrator.run(req)).size == (20, 10)


class TestInpaint:
  def test_only_masked_region_changes(self, orchestrator, install_model, make_image, tmp_path, runtimes):
    install_model("lama")
    image = make_image(size=(64, 64), color=(250, 0, 0))
    mask = Image.new("L", (64, 64), 0)
    mask.paste(255, (0, 0, 32, 64))
    mask_path = str(tmp_path / "mask.png")
    mask.save(mask_path)

    out = np.asarray(_open(orchestrator.run(_request("inpaint", imagePath=image, maskPath=mask_path))).convert("RGB"))
    src = np.asarray(_open(image).convert("RGB"))
    assert np.array_equal(out[:, 40:], src[:, 40:])
    assert np.all(np.abs(out[:, :24].astype(int) - 128) <= 1)
    assert runtimes["lama.onnx"].seen_shapes == [(1, 4, 512, 512)]

  def test_no_fallback(self, orchestrator, offline, make_image):
    path = make_image()
    with pytest.raises(ModelUnavailableError):
      orchestrator.run(_request("inpaint", imagePath=path, maskPath=path))


class TestImageToImage:
  def test_requires_loaded_model(self, orchestrator, make_image):
    with pytest.raises(ModelUnavailableError) as exc:
      orchestrator.run(_request("imageToImage", inputImagePath=make_image()))
    assert exc.value.code == "MODEL_NOT_LOADED"

  def test_rgb_model(self, orchestrator, sessions, make_image, tmp_path):
    model = tmp_path / "custom.onnx"
    model.write_bytes(b"m")
    sessions.load(DEFAULT_MODEL_NAME, str(model))
    out = orchestrator.run(_request("imageToImage", inputImagePath=make_image(size=(48, 32))))
    assert _open(out).size == (48, 32)

  def test_mask_model(self, cache, cfg, output_dir, make_image, tmp_path):
    sessions = SessionManager(cache, cfg=cfg, runtime_factory=lambda path, _cfg: FakeRuntime(constant_mask(0.0)))
    model = tmp_path / "matting.onnx"
    model.write_bytes(b"m")
    sessions.load(DEFAULT_MODEL_NAME, str(model))
    orch = TransformOrchestrator(cache, sessions, cfg=cfg, output_dir=output_dir)
    out = _open(orch.run(_request("imageToImage", imagePath=make_image(size=(40, 40)))))
    assert out.mode == "RGBA"
    assert np.all(np.asarray(out.getchannel("A")) == 0)


class TestPersistence:
  def test_output_names_are_unique(self, orchestrator, make_image):
    path = make_image()
    a = orchestrator.run(_request("applyFilter", imagePath=path, filterName="none"))
    b = orchestrator.run(_request("applyFilter", imagePath=path, filterName="none"))
    assert a != b
    assert os.path.isfile(a) and os.path.isfile(b)

  def test_no_partial_files_left(self, orchestrator, make_image, output_dir):
    orchestrator.run(_request("applyFilter", imagePath=make_image(), filterName="none"))
    assert not [f for f in os.listdir(output_dir) if f.endswith(".part")]

  def test_unwritable_output(self, cache, sessions, cfg, make_image, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    orch = TransformOrchestrator(cache, sessions, cfg=cfg, output_dir=str(blocker))
    with pytest.raises(PersistenceError) as exc:
      orch.run(_request("applyFilter", imagePath=make_image(), filterName="none"))
    assert exc.value.code == "SAVE_ERROR"

  def test_webp_output(self, cache, sessions, cfg, make_image, output_dir):
    cfg["output_format"] = "webp"
    orch = TransformOrchestrator(cache, sessions, cfg=cfg, output_dir=output_dir)
    out = orch.run(_request("applyFilter", imagePath=make_image(), filterName="none"))
    assert out.endswith(".webp")
    with Image.open(out) as im:
      assert im.format == "WEBP"
