import os
import stat
import sys
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

from popstruct_pipeline.config import PipelineConfig

N_SAMPLES = 40
N_VARIANTS = 20


def write_plink_dataset(prefix: Path, n_samples: int = N_SAMPLES,
                        n_variants: int = N_VARIANTS, seed: int = 0) -> np.ndarray:
    """Write a SNP-major .bed/.bim/.fam triple and return the raw 2-bit codes."""
    rng = np.random.default_rng(seed)
    codes = rng.integers(0, 4, size=(n_variants, n_samples), dtype=np.uint8)

    padded = np.zeros((n_variants, ((n_samples + 3) // 4) * 4), dtype=np.uint8)
    padded[:, :n_samples] = codes
    groups = padded.reshape(n_variants, -1, 4)
    packed = (groups[:, :, 0] | (groups[:, :, 1] << 2) |
              (groups[:, :, 2] << 4) | (groups[:, :, 3] << 6)).astype(np.uint8)

    prefix.parent.mkdir(parents=True, exist_ok=True)
    with open(f"{prefix}.bed", 'wb') as f:
        f.write(bytes([0x6c, 0x1b, 0x01]))
        f.write(packed.tobytes())
    with open(f"{prefix}.bim", 'w') as f:
        for j in range(n_variants):
            f.write(f"1\trs{j + 1}\t0\t{1000 * (j + 1)}\tA\tG\n")
    with open(f"{prefix}.fam", 'w') as f:
        for i in range(n_samples):
            f.write(f"FAM{i + 1} IND{i + 1} 0 0 0 -9\n")
    return codes


@pytest.fixture
def plink_dataset(tmp_path: Path) -> SimpleNamespace:
    prefix = tmp_path / "data" / "sample"
    codes = write_plink_dataset(prefix)
    return SimpleNamespace(prefix=str(prefix), codes=codes,
                           n_samples=N_SAMPLES, n_variants=N_VARIANTS)


FAKE_ADMIXTURE = r'''
import os, sys, time
args = sys.argv[1:]
bed, k = args[-2], int(args[-1])
with open(os.environ['FAKE_CALL_LOG'], 'a') as log:
    log.write(f"admixture {k}\n")
if str(k) in os.environ.get('FAKE_ADMIXTURE_SPAWN_K', '').split(','):
    import subprocess
    subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']).wait()
if str(k) in os.environ.get('FAKE_ADMIXTURE_BAD_BYTES_K', '').split(','):
    sys.stdout.flush()
    sys.stdout.buffer.write(b'caf\xe9\n')
    sys.stdout.buffer.flush()
if str(k) in os.environ.get('FAKE_ADMIXTURE_SLEEP_K', '').split(','):
    time.sleep(30)
if str(k) in os.environ.get('FAKE_ADMIXTURE_FAIL_K', '').split(','):
    print("Error: simulated failure")
    sys.exit(1)
with open(bed[:-4] + '.fam') as f:
    n = sum(1 for line in f if line.strip())
base = os.path.basename(bed)[:-4]
with open(f"{base}.{k}.Q", 'w') as f:
    for i in range(n):
        row = [0.0] * k
        row[i % k] = 1.0
        f.write(' '.join(f"{v:.6f}" for v in row) + '\n')
with open(f"{base}.{k}.P", 'w') as f:
    f.write('0.5\n')
print("Loglikelihood: -1000.0")
if os.environ.get('FAKE_ADMIXTURE_NO_CV') != '1':
    print(f"CV error (K={k}): {0.5 + 0.01 * k:.5f}")
'''

FAKE_STRUCTURE = r'''
import os, sys
args = sys.argv[1:]
opts = dict(zip(args[0::2], args[1::2]))
k = int(opts['-K'])
out = opts['-o']
stem = os.path.basename(out)[:-len('_out')]
with open(os.environ['FAKE_CALL_LOG'], 'a') as log:
    log.write(f"structure {stem}\n")
if stem in os.environ.get('FAKE_STRUCTURE_FAIL', '').split(','):
    sys.exit(1)
with open(opts['-i']) as f:
    n = (sum(1 for line in f if line.strip()) - 1) // 2
run = int(stem.split('_run')[1])
with open(out + '_f', 'w') as f:
    f.write("Run parameters:\n   %d individuals\n\n" % n)
    f.write("Estimated Ln Prob of Data   = %.1f\n" % (-1000.0 - 10 * k - run))
    f.write("Mean value of ln likelihood = -990.0\n\n")
    f.write("Inferred ancestry of individuals:\n")
    f.write("        Label (%Miss) :  Inferred clusters\n")
    for i in range(n):
        row = [0.0] * k
        row[(i + run) % k] = 1.0
        f.write("  %d   IND%d    (0)   :  %s\n" % (i + 1, i + 1, ' '.join("%.3f" % v for v in row)))
    f.write("\n\nEstimated Allele Frequencies in each cluster\n")
'''

FAKE_PERL = r'''
import os, sys, zipfile
args = sys.argv[2:]
opts = dict(zip(args[0::2], args[1::2]))
k = opts['--id']
with open(os.environ['FAKE_CALL_LOG'], 'a') as log:
    log.write(f"clumpak {k}\n")
with zipfile.ZipFile(opts['--file']) as zf:
    first = sorted(zf.namelist())[0]
    rows = zf.read(first).decode().split('\n')
target = os.path.join(opts['--dir'], f"K={k}", 'MajorCluster', 'CLUMPP.files')
os.makedirs(target, exist_ok=True)
with open(os.path.join(target, 'ClumppIndFile.output'), 'w') as f:
    for i, row in enumerate(r for r in rows if r.strip()):
        f.write(f"  {i + 1}   {i + 1} (0)   1 :  {row}\n")
'''

FAKE_RSCRIPT = r'''
import os, sys
with open(os.environ['FAKE_CALL_LOG'], 'a') as log:
    log.write("visualization\n")
if os.environ.get('FAKE_RSCRIPT_FAIL') == '1':
    sys.stderr.write("Error in library(ggplot2)\n")
    sys.exit(1)
out = sys.argv[sys.argv.index('--output-dir') + 1]
os.makedirs(out, exist_ok=True)
with open(os.path.join(out, 'structure_barplot.png'), 'w') as f:
    f.write(sys.argv[2])
'''


def _write_tool(bin_dir: Path, name: str, body: str):
    path = bin_dir / name
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture
def fake_tools(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _write_tool(bin_dir, 'admixture', FAKE_ADMIXTURE)
    _write_tool(bin_dir, 'structure', FAKE_STRUCTURE)
    _write_tool(bin_dir, 'perl', FAKE_PERL)
    _write_tool(bin_dir, 'Rscript', FAKE_RSCRIPT)

    clumpak_dir = tmp_path / "CLUMPAK"
    clumpak_dir.mkdir()
    (clumpak_dir / "CLUMPAK.pl").write_text("# placeholder\n")

    viz_script = tmp_path / "visualize_results.R"
    viz_script.write_text("# placeholder\n")

    call_log = tmp_path / "calls.log"
    call_log.write_text("")

    monkeypatch.setenv('PATH', f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv('FAKE_CALL_LOG', str(call_log))

    def calls():
        return [line for line in call_log.read_text().splitlines() if line]

    return SimpleNamespace(bin_dir=bin_dir, clumpak_dir=str(clumpak_dir),
                           viz_script=str(viz_script), call_log=call_log, calls=calls)


@pytest.fixture
def make_config(tmp_path: Path, plink_dataset, fake_tools):
    def factory(**overrides) -> PipelineConfig:
        params = dict(
            input_prefix=plink_dataset.prefix,
            min_k=2,
            max_k=4,
            threads=1,
            structure_runs=2,
            burnin=10,
            numreps=10,
            output_base=str(tmp_path / "output"),
            clumpak_dir=fake_tools.clumpak_dir,
            viz_script=fake_tools.viz_script,
        )
        params.update(overrides)
        return PipelineConfig(**params)

    return factory


@pytest.fixture
def write_dataset():
    return write_plink_dataset
