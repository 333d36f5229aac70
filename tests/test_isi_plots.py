import numpy as np
from matplotlib import pyplot as plt
from petisi.visualizations.isi_plots import generate_isi_fit_title, plot_isi_fit


def test_plot_draws_data_and_fit_per_region():
    frame_times = np.arange(0.5, 10.0, 1.0)
    tacs = np.stack([frame_times, 2.0 * frame_times], axis=1)
    fig = plot_isi_fit(frame_times, tacs, 1.01 * tacs, ['Putamen', 'Caudate'], title='fit')
    ax = fig.get_axes()[0]
    assert len(ax.get_lines()) == 4
    assert [line.get_label() for line in ax.get_lines()] == ['Putamen', 'Putamen fit', 'Caudate', 'Caudate fit']
    assert ax.get_title() == 'fit'
    plt.close(fig)


def test_plot_on_existing_figure():
    fig = plt.figure()
    frame_times = np.arange(0.5, 10.0, 1.0)
    out_fig = plot_isi_fit(frame_times, frame_times[:, np.newaxis], frame_times[:, np.newaxis], ['Putamen'],
                           figObj=fig)
    assert out_fig is fig
    assert len(fig.get_axes()) == 1
    plt.close(fig)


def test_title_has_occupancy_in_percent():
    title = generate_isi_fit_title('1tcm', 'numerical', 'sub-001', 0.6)
    assert 'sub-001' in title and 'numerical' in title
    assert 'Occupancy = 60%' in title
