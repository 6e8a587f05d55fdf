"""fmlbfgs end-to-end tests — train / pred / dump through the command line.

Usage:
    python3 -m pytest test_fmlbfgs_cli.py -v
"""

import os
import tempfile

import numpy as np
import pytest

from fmlbfgs import ConfigError, FmModel, FmObjFunction, _cli

N_ROWS = 80
N_FEAT = 7
NFACTOR = 2


def _write_libsvm(path, seed, n_rows=N_ROWS):
    rng = np.random.default_rng(seed)
    with open(path, "w") as f:
        for i in range(n_rows):
            cols = np.sort(rng.choice(N_FEAT, size=3, replace=False))
            if i == 0:
                cols[-1] = N_FEAT - 1
            label = int(cols[0] % 2 == cols[1] % 2)
            feats = " ".join(f"{c}:{rng.uniform(0.5, 1.5):.4f}" for c in cols)
            f.write(f"{label} {feats}\n")


@pytest.fixture(scope="module")
def workdir():
    with tempfile.TemporaryDirectory(prefix="fm_cli_") as d:
        _write_libsvm(os.path.join(d, "train.libsvm"), seed=30)
        _write_libsvm(os.path.join(d, "val.libsvm"), seed=31, n_rows=20)
        yield d


def _train(workdir, model_out, *extra):
    return _cli(["train",
                 f"data={os.path.join(workdir, 'train.libsvm')}",
                 f"val_data={os.path.join(workdir, 'val.libsvm')}",
                 f"nfactor={NFACTOR}", "reg_L2_V=0.01", "max_lbfgs_iter=15",
                 "verbose=0", f"model_out={model_out}", *extra])


class TestTasks:

    def test_train_pred_dump(self, workdir):
        """A trained model can be reloaded for prediction and dumping."""
        model_out = os.path.join(workdir, "fm.model")
        weight_txt = os.path.join(workdir, "fm.weight.txt")
        assert _train(workdir, model_out, f"name_weight={weight_txt}") == 0

        model = FmModel()
        with open(model_out, "rb") as fi:
            model.load(fi)
        assert model.param.num_feature == N_FEAT
        assert model.param.nfactor == NFACTOR
        assert model.param.num_size == N_ROWS
        assert model.param.num_size_val == 20

        with open(weight_txt) as f:
            lines = f.read().splitlines()
        assert len(lines) == N_FEAT * NFACTOR
        assert lines[0].split("\t")[0] == "0"

        pred = os.path.join(workdir, "pred.txt")
        assert _cli(["pred", f"data={os.path.join(workdir, 'val.libsvm')}",
                     f"model_in={model_out}", f"name_pred={pred}",
                     "verbose=0"]) == 0
        with open(pred) as f:
            margins = [float(x) for x in f.read().split()]
        assert len(margins) == 20
        assert all(np.isfinite(margins))

        dump = os.path.join(workdir, "dump.txt")
        assert _cli(["dump", f"model_in={model_out}", f"name_dump={dump}",
                     "verbose=0"]) == 0
        with open(dump) as f:
            rows = [line.split("\t") for line in f.read().splitlines()]
        assert len(rows) == N_FEAT
        assert all(len(r) == NFACTOR + 1 for r in rows)
        assert [int(r[0]) for r in rows] == list(range(N_FEAT))
        np.testing.assert_allclose(
            [float(x) for x in rows[3][1:]],
            model.weight[3 * NFACTOR:4 * NFACTOR], rtol=1e-5)

    def test_multi_worker_train(self, workdir):
        """Several in-process workers produce one model on the lead worker."""
        model_out = os.path.join(workdir, "fm_w3.model")
        assert _train(workdir, model_out, "nthread=2",
                      "--world-size", "3") == 0
        model = FmModel()
        with open(model_out, "rb") as fi:
            model.load(fi)
        assert model.param.num_size == N_ROWS
        assert model.param.num_feature == N_FEAT

    def test_periodic_weight_files(self, workdir):
        """save_period writes versioned readable weight files."""
        model_out = os.path.join(workdir, "fm_p.model")
        assert _train(workdir, model_out, "save_period=2",
                      "min_lbfgs_iter=4") == 0
        assert os.path.exists(model_out + "_V2")
        assert os.path.exists(model_out + "_V4")

    def test_pred_without_model(self, workdir, capsys):
        code = _cli(["pred", f"data={os.path.join(workdir, 'val.libsvm')}",
                     "verbose=0"])
        assert code == 1
        assert "model_in" in capsys.readouterr().err

    def test_missing_training_data(self, capsys):
        assert _cli(["train", "verbose=0"]) == 1
        assert "data" in capsys.readouterr().err

    def test_bad_parameter(self, capsys):
        assert _cli(["train", "nfactor=two", "verbose=0"]) == 1
        assert "nfactor" in capsys.readouterr().err

    def test_malformed_pair(self):
        with pytest.raises(SystemExit):
            _cli(["train", "nfactor"])

    def test_unknown_task(self):
        obj = FmObjFunction()
        obj.set_param("task", "serve")
        with pytest.raises(ConfigError, match="unknown task"):
            obj.run()
