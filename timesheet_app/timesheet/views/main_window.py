"""Main window and wxPython application wiring."""
from __future__ import annotations

import logging
from typing import Optional

import wx

from timesheet_app.timesheet.controllers import SessionController
from timesheet_app.timesheet.models import StatusLevel
from timesheet_app.timesheet.shutdown import ShutdownGuard

LOGGER = logging.getLogger(__name__)
BACKGROUND = "#F6F7FB"
TEXT_MUTED = "#8A8C93"

STATUS_COLOURS = {
    StatusLevel.INFO: "#2563EB",
    StatusLevel.SUCCESS: "#1C8F36",
    StatusLevel.WARNING: "#E3A018",
    StatusLevel.ERROR: "#C42B1C",
}

STATUS_ICONS = {
    StatusLevel.INFO: wx.ICON_INFORMATION,
    StatusLevel.SUCCESS: wx.ICON_INFORMATION,
    StatusLevel.WARNING: wx.ICON_WARNING,
    StatusLevel.ERROR: wx.ICON_ERROR,
}

EXCEL_WILDCARD = "Excel workbook (*.xlsx)|*.xlsx"


class WxDialogService:
    """Modal dialogs for the session controller, parented to the main frame."""

    def __init__(self, parent: Optional[wx.Window] = None) -> None:
        self.parent = parent

    def pick_document(self) -> Optional[str]:
        with wx.FileDialog(
            self.parent,
            "Choose an Excel file",
            wildcard=EXCEL_WILDCARD,
            style=wx.FD_OPEN | wx.FD_FILE_MUST_EXIST,
        ) as dlg:
            if dlg.ShowModal() != wx.ID_OK:
                return None
            return dlg.GetPath()

    def pick_save_path(self, suggested_name: str) -> Optional[str]:
        with wx.FileDialog(
            self.parent,
            "Save template as",
            defaultFile=suggested_name,
            wildcard=EXCEL_WILDCARD,
            style=wx.FD_SAVE | wx.FD_OVERWRITE_PROMPT,
        ) as dlg:
            if dlg.ShowModal() != wx.ID_OK:
                return None
            return dlg.GetPath()

    def show_message(self, title: str, body: str, level: StatusLevel = StatusLevel.INFO) -> None:
        wx.MessageBox(body, title, style=wx.OK | STATUS_ICONS[level], parent=self.parent)

    def show_confirmation(self, title: str, body: str, accept: str, cancel: str) -> bool:
        with wx.MessageDialog(self.parent, body, title, style=wx.YES_NO | wx.ICON_QUESTION) as dlg:
            dlg.SetYesNoLabels(accept, cancel)
            return dlg.ShowModal() == wx.ID_YES

    def show_prompt(self, title: str, body: str, accept: str, cancel: str) -> Optional[str]:
        with wx.TextEntryDialog(self.parent, body, title) as dlg:
            for button_id, label in ((wx.ID_OK, accept), (wx.ID_CANCEL, cancel)):
                button = dlg.FindWindowById(button_id)
                if button:
                    button.SetLabel(label)
            if dlg.ShowModal() != wx.ID_OK:
                return None
            return dlg.GetValue()


class TimesheetFrame(wx.Frame):
    """Single window: file row, selections, workday and timer controls, status line."""

    def __init__(self, controller: SessionController, guard: ShutdownGuard, dialogs: WxDialogService):
        super().__init__(None, title="Timesheet", size=(720, 520))
        self.SetMinSize((600, 420))
        self.controller = controller
        self.guard = guard
        dialogs.parent = self
        self._build_ui()
        self._build_menu()
        self.Bind(wx.EVT_CLOSE, self.on_close)
        controller.add_listener(self)
        self.state_changed(controller)

    def _build_ui(self) -> None:
        panel = wx.Panel(self)
        panel.SetBackgroundColour(BACKGROUND)
        main_sizer = wx.BoxSizer(wx.VERTICAL)

        file_sizer = wx.BoxSizer(wx.HORIZONTAL)
        self.path_label = wx.StaticText(panel, label="No file selected.")
        self.path_label.SetForegroundColour(TEXT_MUTED)
        file_sizer.Add(self.path_label, 1, wx.ALL | wx.ALIGN_CENTER_VERTICAL, 4)
        for label, handler in (
            ("Browse…", lambda _evt: self.controller.browse_document()),
            ("Reload", lambda _evt: self.controller.reload_reference()),
            ("New template", lambda _evt: self.controller.create_template()),
            ("Open file", lambda _evt: self.controller.open_current_document()),
        ):
            btn = wx.Button(panel, label=label)
            btn.Bind(wx.EVT_BUTTON, handler)
            file_sizer.Add(btn, 0, wx.ALL, 4)
        main_sizer.Add(file_sizer, 0, wx.EXPAND | wx.ALL, 6)

        choice_sizer = wx.FlexGridSizer(2, 2, 6, 8)
        choice_sizer.AddGrowableCol(1)
        self.project_choice = wx.Choice(panel)
        self.work_type_choice = wx.Choice(panel)
        self.project_choice.Bind(wx.EVT_CHOICE, self.on_project_selected)
        self.work_type_choice.Bind(wx.EVT_CHOICE, self.on_work_type_selected)
        for label, ctrl in (("Project", self.project_choice), ("Work type", self.work_type_choice)):
            choice_sizer.Add(wx.StaticText(panel, label=label), 0, wx.ALIGN_CENTER_VERTICAL)
            choice_sizer.Add(ctrl, 1, wx.EXPAND)
        main_sizer.Add(choice_sizer, 0, wx.EXPAND | wx.ALL, 10)

        workday_sizer = wx.BoxSizer(wx.HORIZONTAL)
        self.start_workday_btn = wx.Button(panel, label="Start workday")
        self.end_workday_btn = wx.Button(panel, label="End workday")
        self.start_workday_btn.Bind(wx.EVT_BUTTON, lambda _evt: self.controller.start_workday())
        self.end_workday_btn.Bind(wx.EVT_BUTTON, lambda _evt: self.controller.end_workday())
        workday_sizer.Add(self.start_workday_btn, 0, wx.ALL, 4)
        workday_sizer.Add(self.end_workday_btn, 0, wx.ALL, 4)
        main_sizer.Add(workday_sizer, 0, wx.ALIGN_CENTER | wx.ALL, 6)

        self.timer_label = wx.StaticText(panel, label=self.controller.timer_text)
        font = self.timer_label.GetFont()
        font.SetPointSize(font.GetPointSize() + 18)
        font.MakeBold()
        self.timer_label.SetFont(font)
        main_sizer.Add(self.timer_label, 0, wx.ALIGN_CENTER | wx.ALL, 10)

        timer_sizer = wx.BoxSizer(wx.HORIZONTAL)
        self.start_btn = wx.Button(panel, label="Start")
        self.pause_btn = wx.Button(panel, label="Pause")
        self.stop_btn = wx.Button(panel, label="Stop")
        self.start_btn.Bind(wx.EVT_BUTTON, lambda _evt: self.controller.start_timer())
        self.pause_btn.Bind(wx.EVT_BUTTON, lambda _evt: self.controller.pause_timer())
        self.stop_btn.Bind(wx.EVT_BUTTON, lambda _evt: self.controller.stop_timer())
        for btn in (self.start_btn, self.pause_btn, self.stop_btn):
            timer_sizer.Add(btn, 0, wx.ALL, 4)
        main_sizer.Add(timer_sizer, 0, wx.ALIGN_CENTER | wx.ALL, 6)

        self.status_label = wx.StaticText(panel, label="")
        main_sizer.Add(self.status_label, 0, wx.EXPAND | wx.ALL, 10)
        panel.SetSizer(main_sizer)

    def _build_menu(self) -> None:
        menu_bar = wx.MenuBar()
        help_menu = wx.Menu()
        requirements_item = help_menu.Append(wx.ID_ANY, "Excel requirements")
        about_item = help_menu.Append(wx.ID_ABOUT, "About")
        self.Bind(
            wx.EVT_MENU,
            lambda _evt: wx.MessageBox(self.controller.requirements_text(), "Excel requirements", parent=self),
            requirements_item,
        )
        self.Bind(wx.EVT_MENU, lambda _evt: wx.MessageBox(self.controller.about_text(), "About", parent=self), about_item)
        menu_bar.Append(help_menu, "&Help")
        self.SetMenuBar(menu_bar)

    # SessionListener
    def state_changed(self, controller: SessionController) -> None:
        flags = controller.enablement
        self.path_label.SetLabel(controller.state.document_path or "No file selected.")
        self._fill_choice(self.project_choice, controller.projects, controller.state.selected_project)
        self._fill_choice(self.work_type_choice, controller.work_types, controller.state.selected_work_type)
        self.project_choice.Enable(flags.inputs_enabled)
        self.work_type_choice.Enable(flags.inputs_enabled)
        self.start_workday_btn.Enable(flags.start_workday_enabled)
        self.end_workday_btn.Enable(flags.end_workday_enabled)
        self.start_btn.Enable(flags.start_timer_enabled)
        self.pause_btn.Enable(flags.pause_timer_enabled)
        self.stop_btn.Enable(flags.stop_timer_enabled)

    def status_changed(self, message: str, level: StatusLevel) -> None:
        self.status_label.SetLabel(message)
        self.status_label.SetForegroundColour(STATUS_COLOURS[level])
        self.status_label.Refresh()

    def timer_ticked(self, text: str) -> None:
        self.timer_label.SetLabel(text)

    @staticmethod
    def _fill_choice(choice: wx.Choice, items, selected: Optional[str]) -> None:
        if list(choice.GetItems()) != list(items):
            choice.SetItems(list(items))
        index = choice.FindString(selected) if selected else wx.NOT_FOUND
        choice.SetSelection(index)

    def on_project_selected(self, event: wx.CommandEvent) -> None:
        self.controller.select_project(event.GetString() or None)

    def on_work_type_selected(self, event: wx.CommandEvent) -> None:
        self.controller.select_work_type(event.GetString() or None)

    def on_close(self, event: wx.CloseEvent) -> None:  # type: ignore[override]
        state = self.controller.state
        if event.CanVeto() and (state.workday_active or state.timer_active):
            with wx.MessageDialog(
                self,
                "The running timer will be saved and the workday finished. Exit?",
                "Exit",
                style=wx.YES_NO | wx.ICON_QUESTION,
            ) as dlg:
                if dlg.ShowModal() != wx.ID_YES:
                    event.Veto()
                    return
        self.controller.remove_listener(self)
        self.guard.trigger("window close")
        event.Skip()


class TimesheetApp(wx.App):
    def __init__(self, controller: SessionController, guard: ShutdownGuard, dialogs: WxDialogService):
        self.controller = controller
        self.guard = guard
        self.dialogs = dialogs
        super().__init__(clearSigInt=True)

    def OnInit(self) -> bool:  # type: ignore[override]
        self.frame = TimesheetFrame(self.controller, self.guard, self.dialogs)
        self.frame.Show()
        wx.CallAfter(self.controller.initialize)
        return True

    def run(self) -> None:
        self.MainLoop()
