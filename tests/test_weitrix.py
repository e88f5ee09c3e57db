"""Tests for Weitrix construction, validation, subsetting and combining."""

import numpy as np
import pandas as pd
import pytest

import weitrix as wx


class TestMakeWeitrix:
    """make_weitrix defaults and validation."""

    def test_defaults(self):
        x = np.array([[1.0, np.nan], [3.0, 4.0], [5.0, 6.0]])
        w = wx.make_weitrix(x)
        assert w.shape == (3, 2)
        assert w.nrow == 3
        assert w.ncol == 2
        assert w.row_names == ['1', '2', '3']
        assert w.col_names == ['Col1', 'Col2']
        assert np.array_equal(w['weights'], [[1, 0], [1, 1], [1, 1]])
        assert w['metadata']['calibrated'] is False

    def test_names_from_dataframe(self):
        df = pd.DataFrame([[1.0, 2.0], [3.0, 4.0]], index=['r1', 'r2'],
                          columns=['a', 'b'])
        w = wx.make_weitrix(df)
        assert w.row_names == ['r1', 'r2']
        assert w.col_names == ['a', 'b']
        assert list(w['rows'].index) == ['r1', 'r2']

    def test_trend_formula_in_metadata(self):
        w = wx.make_weitrix(np.ones((2, 2)), trend_formula="~log(total)")
        assert w['metadata']['trend_formula'] == "~log(total)"

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="shape"):
            wx.make_weitrix(np.ones((3, 2)), np.ones((2, 3)))

    def test_negative_weights(self):
        with pytest.raises(ValueError, match="Negative"):
            wx.make_weitrix(np.ones((2, 2)), np.array([[1, -1], [1, 1]]))

    def test_non_finite_weights(self):
        with pytest.raises(ValueError, match="Non-finite"):
            wx.make_weitrix(np.ones((2, 2)), np.array([[1, np.inf], [1, 1]]))

    def test_duplicate_names(self):
        with pytest.raises(ValueError, match="unique"):
            wx.make_weitrix(np.ones((2, 2)), row_names=['a', 'a'])
        with pytest.raises(ValueError, match="unique"):
            wx.make_weitrix(np.ones((2, 2)), col_names=['a', 'a'])

    def test_side_table_length(self):
        with pytest.raises(ValueError, match="rows"):
            wx.make_weitrix(np.ones((3, 2)), rows=pd.DataFrame({'a': [1, 2]}))
        with pytest.raises(ValueError, match="cols"):
            wx.make_weitrix(np.ones((3, 2)), cols=pd.DataFrame({'a': [1, 2, 3]}))

    def test_nan_with_weight_is_zeroed(self):
        x = np.array([[1.0, np.nan], [3.0, 4.0]])
        with pytest.warns(UserWarning, match="non-finite"):
            w = wx.make_weitrix(x, np.ones((2, 2)))
        assert w['weights'][0, 1] == 0
        assert w['weights'][0, 0] == 1

    def test_as_weitrix(self, small_weitrix):
        assert wx.as_weitrix(small_weitrix) is small_weitrix
        w = wx.as_weitrix(np.ones((2, 3)))
        assert isinstance(w, wx.Weitrix)
        assert w.shape == (2, 3)

    def test_valid_weitrix(self, small_weitrix):
        assert wx.valid_weitrix(small_weitrix) is small_weitrix
        with pytest.raises(TypeError):
            wx.valid_weitrix({'x': np.ones((2, 2))})

    def test_accessors(self, small_weitrix):
        assert wx.weitrix_x(small_weitrix).shape == (4, 3)
        assert wx.weitrix_weights(small_weitrix)[1, 1] == 0


class TestWeitrixClass:
    """Subsetting, value semantics and display."""

    def test_subset_by_name(self, small_weitrix):
        sub = small_weitrix['g3', ['s1', 's3']]
        assert sub.shape == (1, 2)
        assert np.array_equal(sub['x'], [[7.0, 10.0]])
        assert sub.row_names == ['g3']
        assert list(sub['cols']['group']) == ['A', 'B']

    def test_subset_by_bool_and_slice(self, small_weitrix):
        sub = small_weitrix[np.array([True, False, True, False]), 1:]
        assert sub.shape == (2, 2)
        assert sub.row_names == ['g1', 'g3']
        assert sub.col_names == ['s2', 's3']

    def test_subset_missing_name(self, small_weitrix):
        with pytest.raises(KeyError):
            small_weitrix['nope', :]

    def test_subset_needs_two_subscripts(self, small_weitrix):
        with pytest.raises(IndexError):
            small_weitrix[0]

    def test_with_weights_does_not_mutate(self, small_weitrix):
        before = small_weitrix['weights'].copy()
        new = small_weitrix.with_weights(np.ones((4, 3)))
        assert np.array_equal(small_weitrix['weights'], before)
        assert np.all(new['weights'] == 1)
        assert new['x'] is small_weitrix['x']
        new['metadata']['flag'] = True
        assert 'flag' not in small_weitrix['metadata']

    def test_with_weights_validates(self, small_weitrix):
        with pytest.raises(ValueError):
            small_weitrix.with_weights(np.ones((2, 2)))
        with pytest.raises(ValueError):
            small_weitrix.with_weights(-np.ones((4, 3)))

    def test_with_rows_and_metadata(self, small_weitrix):
        new = small_weitrix.with_rows(pd.DataFrame({'z': [1, 2, 3, 4]}))
        assert list(new['rows'].index) == small_weitrix.row_names
        assert 'gene' in small_weitrix['rows'].columns
        new = small_weitrix.with_metadata(note="hi")
        assert new['metadata']['note'] == "hi"
        assert 'note' not in small_weitrix['metadata']

    def test_to_dataframe_masks(self, small_weitrix):
        df = small_weitrix.to_dataframe()
        assert np.isnan(df.loc['g2', 's2'])
        assert df.loc['g3', 's3'] == 10.0
        assert small_weitrix.head(2).shape == (2, 3)

    def test_attribute_access_and_repr(self, small_weitrix):
        assert small_weitrix.x is small_weitrix['x']
        assert "4 rows and 3 columns" in repr(small_weitrix)


class TestCombine:
    """cbind_weitrix and rbind_weitrix."""

    def test_cbind(self, small_weitrix):
        a = small_weitrix[:, [0]]
        b = small_weitrix[:, [1, 2]]
        both = wx.cbind_weitrix(a, b)
        assert both.shape == (4, 3)
        assert np.array_equal(both['weights'], small_weitrix['weights'])
        assert both.col_names == small_weitrix.col_names

    def test_rbind(self, small_weitrix):
        both = wx.rbind_weitrix(small_weitrix[:2, :], small_weitrix[2:, :])
        assert both.row_names == small_weitrix.row_names
        assert np.array_equal(both['weights'], small_weitrix['weights'])

    def test_cbind_duplicate_names(self, small_weitrix):
        with pytest.raises(ValueError, match="unique"):
            wx.cbind_weitrix(small_weitrix, small_weitrix)

    def test_rbind_mismatched_columns(self, small_weitrix):
        with pytest.raises(ValueError):
            wx.rbind_weitrix(small_weitrix[:, :2], small_weitrix[:, 1:])
