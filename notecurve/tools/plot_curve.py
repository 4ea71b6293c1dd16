import argparse
import json
import os

import librosa
import librosa.display
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from notecurve.pipeline.curve import Curve


def plot_curve_debug(wav_path, notes_path, curve_path, output_path=None, rate=200.0):
    """
    Spectrogram with detected notes overlaid, and the rendered curve below it.
    """
    print(f"Loading audio: {wav_path}")
    y, sr = librosa.load(wav_path, sr=None)

    # CSV with header time,frequency,energy,duration
    notes = pd.read_csv(notes_path)

    with open(curve_path) as f:
        curve = Curve.from_dict(json.load(f))
    times, values = curve.sample(rate)

    fig, (ax_spec, ax_curve) = plt.subplots(2, 1, figsize=(12, 9), sharex=True,
                                            gridspec_kw={"height_ratios": [3, 1]})

    D = librosa.amplitude_to_db(np.abs(librosa.stft(y)), ref=np.max)
    img = librosa.display.specshow(D, sr=sr, x_axis='time', y_axis='log', ax=ax_spec)
    fig.colorbar(img, ax=ax_spec, format='%+2.0f dB')

    for row in notes.itertuples():
        end = row.time + max(row.duration, 0.01)
        ax_spec.hlines(row.frequency, row.time, end, color='cyan', linewidth=2, alpha=0.8)
    ax_spec.set_title(f'Notes: {os.path.basename(wav_path)} ({len(notes)} events)')

    ax_curve.plot(times, values, color='tab:orange')
    keys = curve.as_tuples()
    ax_curve.scatter([k[0] for k in keys], [k[1] for k in keys], s=8, color='black', zorder=3)
    ax_curve.set_ylabel('height')
    ax_curve.set_xlabel('time (s)')
    fig.tight_layout()

    if output_path:
        fig.savefig(output_path)
        print(f"Plot saved to {output_path}")
    else:
        plt.show()
    return fig


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Visualize detected notes and the rendered curve")
    parser.add_argument("wav_path", help="Path to input audio file")
    parser.add_argument("notes_path", help="Path to notes CSV (time,frequency,energy,duration)")
    parser.add_argument("curve_path", help="Path to curve JSON")
    parser.add_argument("--output", "-o", help="Output image path", default="curve_plot.png")
    parser.add_argument("--rate", type=float, default=200.0, help="Curve sampling rate in Hz")

    args = parser.parse_args()

    plot_curve_debug(args.wav_path, args.notes_path, args.curve_path, args.output, args.rate)
